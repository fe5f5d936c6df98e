"""
x402guard: Spending guardrails for AI agents paying x402 endpoints.

Owner sets policy → Agent pays within it → Owner approves the rest.
"""

__version__ = "0.1.0"

from .account import GuardedAccount, PendingPayment
from .access import Command, Role, authorize
from .authorizer import BlockReason, Decision, DecisionKind, evaluate
from .clock import PolicyClock
from .endpoints import endpoint_id_for_url
from .approvals import ApprovalQueue
from .policy_store import PolicyStore
from .ledger import InMemoryLedger, LedgerPort, LocalLedger, TransferResult
from .engine import GuardEngine, PaymentCheck, PaymentResult
from .factory import GuardFactory
from .notifications import WebhookNotifier
from .audit import AuditTrail, EventType

__all__ = [
    "GuardedAccount", "PendingPayment",
    "Command", "Role", "authorize",
    "BlockReason", "Decision", "DecisionKind", "evaluate",
    "PolicyClock", "endpoint_id_for_url", "ApprovalQueue", "PolicyStore",
    "InMemoryLedger", "LedgerPort", "LocalLedger", "TransferResult",
    "GuardEngine", "PaymentCheck", "PaymentResult", "GuardFactory",
    "WebhookNotifier", "AuditTrail", "EventType",
]
