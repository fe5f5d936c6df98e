"""
Guard engine: the operation surface for guarded accounts.

Flow for an agent payment:
1. Take the per-account lock and open a unit of work
2. Authorize the caller for the command
3. Evaluate policy (caps, daily reset, allowlist, approval threshold)
4. Allowed: apply counters and transfer through the ledger in one unit;
   NeedsApproval: append a pending payment; Blocked: change nothing
5. Commit, then write the audit record; a failed write is logged, not raised
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from .access import Command, authorize
from .account import (
    GuardedAccount,
    PendingPayment,
    normalize_address,
    require_non_negative,
    require_positive,
)
from .approvals import ApprovalQueue
from .audit import AuditTrail, EventType
from .authorizer import Decision, evaluate
from .clock import PolicyClock, policy_day
from .endpoints import endpoint_id_for_url, is_endpoint_permitted, normalize_endpoint_id
from .errors import InsufficientBalanceError, LedgerError, ResourceError, TransferFailedError
from .ledger import LedgerPort
from .notifications import ApprovalNotifier
from .policy_store import PolicyStore, StoreSession

logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    """Result of an agent payment request or an owner approval."""

    decision: Decision
    payment_id: Optional[int] = None
    transfer_reference: Optional[str] = None
    daily_spent_after: Optional[int] = None

    @property
    def executed(self) -> bool:
        return self.decision.allowed

    @property
    def queued(self) -> bool:
        return self.decision.needs_approval

    @property
    def blocked(self) -> bool:
        return self.decision.blocked

    def to_dict(self) -> dict:
        d = self.decision.to_dict()
        d.update(
            {
                "payment_id": self.payment_id,
                "transfer_reference": self.transfer_reference,
                "daily_spent_after": self.daily_spent_after,
            }
        )
        return d


@dataclass(frozen=True)
class PaymentCheck:
    """Dry-run verdict; ``allowed`` is false only when policy blocks."""

    allowed: bool
    needs_approval: bool
    reason: Optional[str] = None


class GuardEngine:
    """Applies spending policy to guarded accounts and commits their spend."""

    def __init__(
        self,
        store: PolicyStore,
        ledger: LedgerPort,
        audit: AuditTrail,
        clock: Optional[PolicyClock] = None,
        approvals: Optional[ApprovalQueue] = None,
        notifier: Optional[ApprovalNotifier] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.audit = audit
        self.clock = clock or PolicyClock()
        self.approvals = approvals or ApprovalQueue()
        self.notifier = notifier

    @contextmanager
    def _command(
        self,
        command: Command,
        account_id: str,
        caller: str,
    ) -> Iterator[tuple[StoreSession, GuardedAccount]]:
        """Open a unit of work, load the account and authorize ``caller``.

        Callers must already hold ``store.account_lock(account_id)``.
        """
        with self.store.unit_of_work() as session:
            account = session.load_account(account_id)
            authorize(command, caller, account)
            yield session, account

    def _today(self, now: float) -> int:
        return policy_day(now, self.clock.day_seconds)

    # ----- owner: policy administration -----

    def set_policy(
        self,
        account_id: str,
        caller: str,
        max_per_transaction: int,
        daily_limit: int,
        approval_threshold: int,
    ) -> None:
        caller = normalize_address(caller)
        require_non_negative(max_per_transaction, "max_per_transaction")
        require_non_negative(daily_limit, "daily_limit")
        require_non_negative(approval_threshold, "approval_threshold")
        with self.store.account_lock(account_id):
            with self._command(Command.SET_POLICY, account_id, caller) as (session, _):
                session.update_policy(account_id, max_per_transaction, daily_limit, approval_threshold)
            self.audit.record(
                EventType.POLICY_UPDATED,
                account_id=account_id,
                actor=caller,
                details={
                    "max_per_transaction": max_per_transaction,
                    "daily_limit": daily_limit,
                    "approval_threshold": approval_threshold,
                },
            )
        logger.info("Policy updated for %s", account_id)

    def set_agent(self, account_id: str, caller: str, agent: str) -> None:
        caller = normalize_address(caller)
        new_agent = normalize_address(agent)
        with self.store.account_lock(account_id):
            with self._command(Command.SET_AGENT, account_id, caller) as (session, account):
                old_agent = account.agent
                session.update_agent(account_id, new_agent)
            self.audit.record(
                EventType.AGENT_UPDATED,
                account_id=account_id,
                actor=caller,
                details={"old_agent": old_agent, "new_agent": new_agent},
            )
        logger.info("Agent for %s changed from %s to %s", account_id, old_agent, new_agent)

    def set_endpoint_allowed(
        self,
        account_id: str,
        caller: str,
        endpoint_id: str,
        allowed: bool,
    ) -> None:
        caller = normalize_address(caller)
        endpoint = normalize_endpoint_id(endpoint_id)
        self._set_endpoint(Command.SET_ENDPOINT_ALLOWED, account_id, caller, endpoint, allowed)

    def set_endpoint_allowed_by_url(
        self,
        account_id: str,
        caller: str,
        url: str,
        allowed: bool,
    ) -> str:
        """Hash ``url`` into an endpoint id, update the allowlist, return the id."""
        caller = normalize_address(caller)
        endpoint = endpoint_id_for_url(url)
        self._set_endpoint(
            Command.SET_ENDPOINT_ALLOWED_BY_URL, account_id, caller, endpoint, allowed, url=url
        )
        return endpoint

    def _set_endpoint(
        self,
        command: Command,
        account_id: str,
        caller: str,
        endpoint: str,
        allowed: bool,
        url: Optional[str] = None,
    ) -> None:
        details: dict = {"allowed": bool(allowed)}
        if url is not None:
            details["url"] = url
        with self.store.account_lock(account_id):
            with self._command(command, account_id, caller) as (session, _):
                session.set_endpoint(account_id, endpoint, bool(allowed))
            self.audit.record(
                EventType.ENDPOINT_ALLOWED,
                account_id=account_id,
                actor=caller,
                endpoint_id=endpoint,
                details=details,
            )

    def set_allow_all_endpoints(self, account_id: str, caller: str, allow_all: bool) -> None:
        caller = normalize_address(caller)
        with self.store.account_lock(account_id):
            with self._command(Command.SET_ALLOW_ALL_ENDPOINTS, account_id, caller) as (session, _):
                session.update_allow_all(account_id, bool(allow_all))
            self.audit.record(
                EventType.ALL_ENDPOINTS_TOGGLED,
                account_id=account_id,
                actor=caller,
                details={"allow_all": bool(allow_all)},
            )

    # ----- agent: payments -----

    def execute_payment(
        self,
        account_id: str,
        caller: str,
        to: str,
        amount: int,
        endpoint_id: str,
    ) -> PaymentResult:
        """Evaluate and, when allowed, commit one agent payment.

        Requests above the approval threshold are queued and reported as
        ``NEEDS_APPROVAL`` with the new ``payment_id``; that is a successful
        outcome, not an error.
        """
        caller = normalize_address(caller)
        to = normalize_address(to)
        endpoint = normalize_endpoint_id(endpoint_id)
        require_positive(amount, "amount")

        pending: Optional[PendingPayment] = None
        with self.store.account_lock(account_id):
            now = self.clock.now()
            today = self._today(now)
            try:
                with self._command(Command.EXECUTE_PAYMENT, account_id, caller) as (session, account):
                    decision = evaluate(
                        account,
                        amount,
                        session.is_endpoint_allowed(account_id, endpoint),
                        today,
                    )
                    if decision.blocked:
                        result = PaymentResult(decision)
                    elif decision.needs_approval:
                        pending = self.approvals.enqueue(session, account, to, amount, endpoint, now)
                        result = PaymentResult(decision, payment_id=pending.payment_id)
                    else:
                        daily_after, reference = self._commit_spend(
                            session, account_id, to, amount, today
                        )
                        result = PaymentResult(
                            decision,
                            transfer_reference=reference,
                            daily_spent_after=daily_after,
                        )
            except (ResourceError, LedgerError) as exc:
                self._log_failure(account_id, caller, to, amount, endpoint, None, exc)
                raise

            self._log_payment(account_id, caller, to, amount, endpoint, result, pending)

        if pending is not None and self.notifier is not None:
            self.notifier.payment_queued(pending)
        return result

    def _commit_spend(
        self,
        session: StoreSession,
        account_id: str,
        to: str,
        amount: int,
        today: int,
    ) -> tuple[int, Optional[str]]:
        """Apply counters and transfer in the caller's unit of work.

        Any failure raises, which rolls the unit of work back, so counters
        never stay incremented without the matching transfer.
        """
        daily_after = session.apply_spend(account_id, amount, today)
        try:
            transfer = self.ledger.transfer_out(account_id, to, amount)
        except Exception as e:
            logger.warning("Ledger transfer for %s raised: %s", account_id, e)
            raise TransferFailedError(f"Ledger transfer error: {type(e).__name__}: {e}") from e
        if not transfer.success:
            logger.warning("Ledger refused transfer for %s: %s", account_id, transfer.reason)
            if transfer.insufficient_balance:
                raise InsufficientBalanceError(amount, self.ledger.balance_of(account_id))
            raise TransferFailedError(transfer.reason or "Ledger transfer failed")
        logger.info("Committed %s from %s to %s (daily %s)", amount, account_id, to, daily_after)
        return daily_after, transfer.reference

    def _log_payment(
        self,
        account_id: str,
        caller: str,
        to: str,
        amount: int,
        endpoint: str,
        result: PaymentResult,
        pending: Optional[PendingPayment],
    ) -> None:
        if result.blocked:
            self.audit.record(
                EventType.PAYMENT_BLOCKED,
                account_id=account_id,
                actor=caller,
                amount=amount,
                to=to,
                endpoint_id=endpoint,
                success=False,
                reason=result.decision.reason.value if result.decision.reason else None,
                details={"daily_spent": result.decision.daily_spent},
            )
        elif pending is not None:
            self.audit.record(
                EventType.PAYMENT_QUEUED,
                account_id=account_id,
                actor=caller,
                amount=amount,
                to=to,
                endpoint_id=endpoint,
                payment_id=pending.payment_id,
                details={"expiry": pending.expiry},
            )
        else:
            self.audit.record(
                EventType.PAYMENT_EXECUTED,
                account_id=account_id,
                actor=caller,
                amount=amount,
                to=to,
                endpoint_id=endpoint,
                payment_id=result.payment_id,
                details={
                    "daily_spent_after": result.daily_spent_after,
                    "transfer_reference": result.transfer_reference,
                },
            )

    def _log_failure(
        self,
        account_id: str,
        caller: str,
        to: str,
        amount: int,
        endpoint: str,
        payment_id: Optional[int],
        exc: Exception,
    ) -> None:
        self.audit.record(
            EventType.PAYMENT_FAILED,
            account_id=account_id,
            actor=caller,
            amount=amount,
            to=to,
            endpoint_id=endpoint,
            payment_id=payment_id,
            success=False,
            reason=str(exc),
        )

    # ----- owner: approval queue -----

    def approve_payment(self, account_id: str, caller: str, payment_id: int) -> PaymentResult:
        """Execute a queued payment.

        The owner's approval overrides the per-transaction and daily caps;
        the amount still counts toward the daily and total counters.
        """
        caller = normalize_address(caller)
        with self.store.account_lock(account_id):
            now = self.clock.now()
            today = self._today(now)
            pending: Optional[PendingPayment] = None
            try:
                with self._command(Command.APPROVE_PAYMENT, account_id, caller) as (session, account):
                    pending = self.approvals.claim_for_approval(session, account_id, payment_id, now)
                    daily_before = account.effective_daily_spent(today)
                    daily_after, reference = self._commit_spend(
                        session, account_id, pending.to, pending.amount, today
                    )
                    self.approvals.mark_executed(session, pending)
            except (ResourceError, LedgerError) as exc:
                if pending is not None:
                    self._log_failure(
                        account_id, caller, pending.to, pending.amount,
                        pending.endpoint_id, payment_id, exc,
                    )
                raise

            result = PaymentResult(
                Decision.allow(daily_before, today),
                payment_id=payment_id,
                transfer_reference=reference,
                daily_spent_after=daily_after,
            )
            self.audit.record(
                EventType.PAYMENT_APPROVED,
                account_id=account_id,
                actor=caller,
                amount=pending.amount,
                to=pending.to,
                endpoint_id=pending.endpoint_id,
                payment_id=payment_id,
            )
            self._log_payment(
                account_id, caller, pending.to, pending.amount, pending.endpoint_id, result, None
            )
        logger.info("Approved pending payment %s on %s", payment_id, account_id)
        return result

    def reject_payment(self, account_id: str, caller: str, payment_id: int) -> PendingPayment:
        caller = normalize_address(caller)
        with self.store.account_lock(account_id):
            with self._command(Command.REJECT_PAYMENT, account_id, caller) as (session, _):
                pending = self.approvals.claim_for_rejection(session, account_id, payment_id)
                self.approvals.mark_rejected(session, pending)
            self.audit.record(
                EventType.PAYMENT_REJECTED,
                account_id=account_id,
                actor=caller,
                amount=pending.amount,
                to=pending.to,
                endpoint_id=pending.endpoint_id,
                payment_id=payment_id,
            )
        logger.info("Rejected pending payment %s on %s", payment_id, account_id)
        return pending

    # ----- treasury -----

    def fund(self, account_id: str, caller: str, amount: int) -> int:
        """Move ``amount`` from ``caller`` into the account; return the new balance."""
        caller = normalize_address(caller)
        require_positive(amount, "amount")
        with self.store.account_lock(account_id):
            with self._command(Command.FUND, account_id, caller):
                transfer = self.ledger.transfer_in(account_id, caller, amount)
                if not transfer.success:
                    if transfer.insufficient_balance:
                        raise InsufficientBalanceError(amount, self.ledger.balance_of(caller))
                    raise TransferFailedError(transfer.reason or "Ledger transfer failed")
            balance = self.ledger.balance_of(account_id)
            self.audit.record(
                EventType.FUNDED,
                account_id=account_id,
                actor=caller,
                amount=amount,
                details={"balance_after": balance, "transfer_reference": transfer.reference},
            )
        return balance

    def withdraw(self, account_id: str, caller: str, amount: int) -> int:
        """Send ``amount`` back to the owner; return the remaining balance."""
        require_positive(amount, "amount")
        _, remaining = self._withdraw(Command.WITHDRAW, account_id, caller, amount)
        return remaining

    def withdraw_all(self, account_id: str, caller: str) -> int:
        """Send the whole balance back to the owner; return the amount withdrawn."""
        withdrawn, _ = self._withdraw(Command.WITHDRAW_ALL, account_id, caller, None)
        return withdrawn

    def _withdraw(
        self,
        command: Command,
        account_id: str,
        caller: str,
        amount: Optional[int],
    ) -> tuple[int, int]:
        """Return the amount withdrawn and the balance left, read under the lock."""
        caller = normalize_address(caller)
        with self.store.account_lock(account_id):
            with self._command(command, account_id, caller) as (_, account):
                balance = self.ledger.balance_of(account_id)
                requested = balance if amount is None else amount
                if requested == 0:
                    return 0, balance
                if requested > balance:
                    raise InsufficientBalanceError(requested, balance)
                transfer = self.ledger.transfer_out(account_id, account.owner, requested)
                if not transfer.success:
                    if transfer.insufficient_balance:
                        raise InsufficientBalanceError(requested, self.ledger.balance_of(account_id))
                    raise TransferFailedError(transfer.reason or "Ledger transfer failed")
            remaining = self.ledger.balance_of(account_id)
            self.audit.record(
                EventType.WITHDRAWN,
                account_id=account_id,
                actor=caller,
                amount=requested,
                to=account.owner,
                details={"balance_after": remaining, "transfer_reference": transfer.reference},
            )
        logger.info("Withdrew %s from %s to owner", requested, account_id)
        return requested, remaining

    # ----- public reads -----

    def check_payment(self, account_id: str, amount: int, endpoint_id: str) -> PaymentCheck:
        """Simulate ``execute_payment`` without mutating anything."""
        endpoint = normalize_endpoint_id(endpoint_id)
        with self.store.snapshot() as session:
            account = session.load_account(account_id)
            decision = evaluate(
                account,
                amount,
                session.is_endpoint_allowed(account_id, endpoint),
                self.clock.today(),
            )
        return PaymentCheck(
            allowed=not decision.blocked,
            needs_approval=decision.needs_approval,
            reason=decision.reason.value if decision.reason else None,
        )

    def get_account(self, account_id: str) -> GuardedAccount:
        """Account fields with counters as of the current policy day."""
        return self.store.get_account(account_id).as_of(self.clock.today())

    def get_balance(self, account_id: str) -> int:
        self.store.get_account(account_id)
        return self.ledger.balance_of(account_id)

    def get_pending_payment(self, account_id: str, payment_id: int) -> PendingPayment:
        return self.store.get_pending(account_id, payment_id)

    def list_pending_payments(
        self,
        account_id: str,
        include_resolved: bool = False,
    ) -> list[PendingPayment]:
        payments = self.store.list_pending(account_id)
        if include_resolved:
            return payments
        return [p for p in payments if not p.resolved]

    def get_remaining_daily_budget(self, account_id: str) -> int:
        return self.store.get_account(account_id).remaining_daily_budget(self.clock.today())

    def get_time_until_reset(self, account_id: str) -> int:
        self.store.get_account(account_id)
        return self.clock.seconds_until_reset()

    def is_endpoint_allowed(self, account_id: str, endpoint_id: str) -> bool:
        endpoint = normalize_endpoint_id(endpoint_id)
        account = self.store.get_account(account_id)
        return is_endpoint_permitted(
            account.allow_all_endpoints,
            self.store.is_endpoint_allowed(account_id, endpoint),
        )

    def is_endpoint_allowed_by_url(self, account_id: str, url: str) -> bool:
        return self.is_endpoint_allowed(account_id, endpoint_id_for_url(url))

    def list_allowed_endpoints(self, account_id: str) -> list[str]:
        self.store.get_account(account_id)
        return self.store.list_endpoints(account_id)
