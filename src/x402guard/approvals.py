"""
Approval queue lifecycle.

Entries are created when a request crosses the approval threshold and are
resolved exactly once by the owner: approved (then executed) or rejected.
Expiry is checked lazily when the owner tries to approve; nothing expires
entries in the background.
"""

from __future__ import annotations

import logging

from .account import GuardedAccount, PendingPayment
from .errors import PaymentAlreadyResolvedError, PaymentExpiredError
from .policy_store import StoreSession

logger = logging.getLogger(__name__)


DEFAULT_APPROVAL_TTL_SECONDS = 24 * 3600


class ApprovalQueue:
    """Creates and resolves pending payments inside a store session."""

    def __init__(self, ttl_seconds: int = DEFAULT_APPROVAL_TTL_SECONDS):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds

    def enqueue(
        self,
        session: StoreSession,
        account: GuardedAccount,
        to: str,
        amount: int,
        endpoint_id: str,
        now: float,
    ) -> PendingPayment:
        created_at = int(now)
        pending = session.append_pending(
            account.account_id,
            to=to,
            amount=amount,
            endpoint_id=endpoint_id,
            created_at=created_at,
            expiry=created_at + self.ttl_seconds,
        )
        logger.info(
            "Queued payment %s on %s: %s to %s",
            pending.payment_id, account.account_id, amount, to,
        )
        return pending

    def claim_for_approval(
        self,
        session: StoreSession,
        account_id: str,
        payment_id: int,
        now: float,
    ) -> PendingPayment:
        pending = self._claim(session, account_id, payment_id)
        if pending.is_expired(now):
            raise PaymentExpiredError(payment_id, pending.expiry)
        return pending

    def claim_for_rejection(
        self,
        session: StoreSession,
        account_id: str,
        payment_id: int,
    ) -> PendingPayment:
        return self._claim(session, account_id, payment_id)

    def mark_executed(self, session: StoreSession, pending: PendingPayment) -> None:
        session.mark_pending(pending.account_id, pending.payment_id, executed=True)
        pending.executed = True

    def mark_rejected(self, session: StoreSession, pending: PendingPayment) -> None:
        session.mark_pending(pending.account_id, pending.payment_id, rejected=True)
        pending.rejected = True

    def _claim(self, session: StoreSession, account_id: str, payment_id: int) -> PendingPayment:
        pending = session.load_pending(account_id, payment_id)
        if pending.resolved:
            raise PaymentAlreadyResolvedError(
                payment_id, "executed" if pending.executed else "rejected"
            )
        return pending
