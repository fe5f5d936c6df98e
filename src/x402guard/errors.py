"""
x402guard error types.

Access, resolution and resource failures are exceptions so callers can
handle each case separately. Policy violations are not errors: they come
back as a ``BlockReason`` on the authorizer's ``Decision``.
"""


class GuardError(Exception):
    """Base error for all x402guard operations."""
    pass


class AccountNotFoundError(GuardError):
    """No guarded account exists with the given id."""
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Guarded account not found: {account_id}")


# Access errors
class AccessError(GuardError):
    """Caller is not in the role a command requires."""
    def __init__(self, caller: str, message: str):
        self.caller = caller
        super().__init__(message)


class NotOwnerError(AccessError):
    """Command is owner-only."""
    def __init__(self, caller: str):
        super().__init__(caller, f"Caller {caller} is not the account owner")


class NotAgentError(AccessError):
    """Command is agent-only."""
    def __init__(self, caller: str):
        super().__init__(caller, f"Caller {caller} is not the account agent")


# Approval queue errors
class ResolutionError(GuardError):
    """Base error for acting on a pending payment that cannot be resolved."""
    pass


class InvalidPaymentIdError(ResolutionError):
    """Pending payment index is out of range."""
    def __init__(self, payment_id: int):
        self.payment_id = payment_id
        super().__init__(f"Invalid pending payment id: {payment_id}")


class PaymentAlreadyResolvedError(ResolutionError):
    """Pending payment was already executed or rejected."""
    def __init__(self, payment_id: int, status: str):
        self.payment_id = payment_id
        self.status = status
        super().__init__(f"Pending payment {payment_id} is already {status}")


class PaymentExpiredError(ResolutionError):
    """Pending payment can no longer be approved."""
    def __init__(self, payment_id: int, expiry: int):
        self.payment_id = payment_id
        self.expiry = expiry
        super().__init__(f"Pending payment {payment_id} expired at {expiry}")


# Ledger errors
class ResourceError(GuardError):
    """Ledger fact (not a configured limit) prevents the operation."""
    pass


class InsufficientBalanceError(ResourceError):
    """Account (or funding source) balance is too low."""
    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient balance: requested {requested}, available {available}")


class LedgerError(GuardError):
    """Base error for ledger port failures."""
    pass


class TransferFailedError(LedgerError):
    """Ledger transfer could not be completed; counters were rolled back."""
    pass


class AuditChainError(GuardError):
    """Audit trail hash chain does not verify."""
    pass
