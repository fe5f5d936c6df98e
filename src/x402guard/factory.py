"""Creates guarded accounts and indexes them by owner."""

from __future__ import annotations

import logging
from typing import Optional

from eth_utils import keccak

from .account import GuardedAccount, normalize_address, require_non_negative
from .audit import AuditTrail, EventType
from .clock import PolicyClock
from .policy_store import PolicyStore

logger = logging.getLogger(__name__)


def derive_account_id(owner: str, nonce: int) -> str:
    """Address-shaped id: last 20 bytes of keccak(owner || nonce)."""
    seed = bytes.fromhex(owner[2:]) + nonce.to_bytes(32, "big")
    return "0x" + keccak(seed)[-20:].hex()


class GuardFactory:
    def __init__(
        self,
        store: PolicyStore,
        audit: AuditTrail,
        clock: Optional[PolicyClock] = None,
    ):
        self.store = store
        self.audit = audit
        self.clock = clock or PolicyClock()

    def create_guard(
        self,
        owner: str,
        agent: str,
        max_per_transaction: int,
        daily_limit: int,
        approval_threshold: int,
        allow_all_endpoints: bool = False,
    ) -> GuardedAccount:
        owner = normalize_address(owner)
        agent = normalize_address(agent)
        require_non_negative(max_per_transaction, "max_per_transaction")
        require_non_negative(daily_limit, "daily_limit")
        require_non_negative(approval_threshold, "approval_threshold")

        now = self.clock.now()
        with self.store.unit_of_work() as session:
            nonce = session.count_accounts(owner)
            account = GuardedAccount(
                account_id=derive_account_id(owner, nonce),
                owner=owner,
                agent=agent,
                max_per_transaction=max_per_transaction,
                daily_limit=daily_limit,
                approval_threshold=approval_threshold,
                last_reset_day=self.clock.today(),
                allow_all_endpoints=bool(allow_all_endpoints),
                created_at=int(now),
            )
            session.insert_account(account)

        self.audit.record(
            EventType.GUARD_CREATED,
            account_id=account.account_id,
            actor=owner,
            details={
                "agent": agent,
                "max_per_transaction": max_per_transaction,
                "daily_limit": daily_limit,
                "approval_threshold": approval_threshold,
                "allow_all_endpoints": bool(allow_all_endpoints),
            },
        )
        logger.info("Created guard %s for owner %s", account.account_id, owner)
        return account

    def guards_by_owner(self, owner: str) -> list[str]:
        return self.store.account_ids(normalize_address(owner))

    def guard_count(self) -> int:
        return len(self.store.account_ids())

    def all_guards(self) -> list[str]:
        return self.store.account_ids()
