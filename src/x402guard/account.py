"""
Guarded account and pending payment records.

A GuardedAccount is the policy state of one protected wallet: the owner who
administers it, the agent allowed to spend from it, the three limits and the
running counters. PendingPayment records are the approval queue entries,
addressed by a per-account index that is never reused.
"""

from __future__ import annotations

import re
import time
from dataclasses import asdict, dataclass
from typing import Optional


_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def require_non_negative(value: int, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field_name} must be an integer base-unit value")
    if value < 0:
        raise ValueError(f"{field_name} must be >= 0")
    return value


def require_positive(value: int, field_name: str) -> int:
    require_non_negative(value, field_name)
    if value == 0:
        raise ValueError(f"{field_name} must be > 0")
    return value


@dataclass
class GuardedAccount:
    """Policy and counters for one protected wallet."""

    account_id: str
    owner: str
    agent: str
    max_per_transaction: int
    daily_limit: int
    approval_threshold: int
    daily_spent: int = 0
    total_spent: int = 0
    last_reset_day: int = 0
    allow_all_endpoints: bool = False
    pending_count: int = 0
    created_at: int = 0

    def effective_daily_spent(self, today: int) -> int:
        """Daily counter as seen on policy day ``today``."""
        if today != self.last_reset_day:
            return 0
        return self.daily_spent

    def remaining_daily_budget(self, today: int) -> int:
        return max(0, self.daily_limit - self.effective_daily_spent(today))

    def as_of(self, today: int) -> GuardedAccount:
        """Copy with the daily reset applied for ``today``."""
        if today == self.last_reset_day:
            return self
        data = asdict(self)
        data["daily_spent"] = 0
        data["last_reset_day"] = today
        return GuardedAccount(**data)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PendingPayment:
    """A payment above the approval threshold awaiting the owner."""

    payment_id: int
    account_id: str
    to: str
    amount: int
    endpoint_id: str
    created_at: int
    expiry: int
    executed: bool = False
    rejected: bool = False

    @property
    def resolved(self) -> bool:
        return self.executed or self.rejected

    def is_expired(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expiry

    def status(self, now: Optional[float] = None) -> str:
        if self.executed:
            return "executed"
        if self.rejected:
            return "rejected"
        if self.is_expired(now):
            return "expired"
        return "pending"

    def to_dict(self, now: Optional[float] = None) -> dict:
        d = asdict(self)
        d["status"] = self.status(now)
        return d
