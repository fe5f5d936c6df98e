"""
Payment authorization decisions.

``evaluate`` applies the spending policy to one requested payment. Checks
run in a fixed order and stop at the first failure:

1. per-transaction cap
2. daily reset (a new policy day zeroes the daily counter for this request)
3. daily cap
4. endpoint allowlist
5. approval threshold

The function is pure. Committing an ``Allowed`` decision is the engine's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .account import GuardedAccount, require_positive
from .endpoints import is_endpoint_permitted

logger = logging.getLogger(__name__)


class DecisionKind(str, Enum):
    ALLOWED = "allowed"
    NEEDS_APPROVAL = "needs_approval"
    BLOCKED = "blocked"


class BlockReason(str, Enum):
    EXCEEDS_PER_TRANSACTION_LIMIT = "ExceedsPerTransactionLimit"
    EXCEEDS_DAILY_LIMIT = "ExceedsDailyLimit"
    ENDPOINT_NOT_ALLOWED = "EndpointNotAllowed"


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating one payment request."""

    kind: DecisionKind
    daily_spent: int
    policy_day: int
    reason: Optional[BlockReason] = None

    @property
    def allowed(self) -> bool:
        return self.kind == DecisionKind.ALLOWED

    @property
    def needs_approval(self) -> bool:
        return self.kind == DecisionKind.NEEDS_APPROVAL

    @property
    def blocked(self) -> bool:
        return self.kind == DecisionKind.BLOCKED

    @classmethod
    def allow(cls, daily_spent: int, policy_day: int) -> Decision:
        return cls(DecisionKind.ALLOWED, daily_spent, policy_day)

    @classmethod
    def queue(cls, daily_spent: int, policy_day: int) -> Decision:
        return cls(DecisionKind.NEEDS_APPROVAL, daily_spent, policy_day)

    @classmethod
    def block(cls, reason: BlockReason, daily_spent: int, policy_day: int) -> Decision:
        return cls(DecisionKind.BLOCKED, daily_spent, policy_day, reason)

    def to_dict(self) -> dict:
        return {
            "decision": self.kind.value,
            "reason": self.reason.value if self.reason else None,
            "daily_spent": self.daily_spent,
            "policy_day": self.policy_day,
        }


def evaluate(
    account: GuardedAccount,
    amount: int,
    endpoint_allowed: bool,
    today: int,
) -> Decision:
    """Decide whether ``amount`` may be paid from ``account`` on day ``today``.

    ``daily_spent`` on the returned decision is the counter after the reset
    of step 2 and before this payment.
    """
    require_positive(amount, "amount")

    if amount > account.max_per_transaction:
        return Decision.block(
            BlockReason.EXCEEDS_PER_TRANSACTION_LIMIT,
            account.effective_daily_spent(today),
            today,
        )

    daily_spent = account.effective_daily_spent(today)

    if daily_spent + amount > account.daily_limit:
        return Decision.block(BlockReason.EXCEEDS_DAILY_LIMIT, daily_spent, today)

    if not is_endpoint_permitted(account.allow_all_endpoints, endpoint_allowed):
        return Decision.block(BlockReason.ENDPOINT_NOT_ALLOWED, daily_spent, today)

    if amount > account.approval_threshold:
        decision = Decision.queue(daily_spent, today)
    else:
        decision = Decision.allow(daily_spent, today)
    logger.debug(
        "Evaluated %s for %s on day %s: %s",
        amount, account.account_id, today, decision.kind.value,
    )
    return decision
