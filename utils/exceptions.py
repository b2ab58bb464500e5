"""
Settlement Exceptions
Error kinds raised by the settlement services. Every error carries a
user-visible reason string and the HTTP status the API layer should return.
"""

from typing import Optional


class SettlementError(Exception):
    """Base class for all settlement failures"""

    status_code = 400
    default_reason = "Settlement operation failed"

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.reason}


class ValidationError(SettlementError):
    """Invalid input, rejected before any side effect"""
    default_reason = "Invalid request"


class NotFound(SettlementError):
    status_code = 404
    default_reason = "Resource not found"


class NotAuthorized(SettlementError):
    status_code = 403
    default_reason = "Not authorized for this operation"


class InsufficientBalance(SettlementError):
    status_code = 409
    default_reason = "Insufficient balance"


class RateLimitExceeded(SettlementError):
    status_code = 429
    default_reason = "Rate limit exceeded"


class InvalidWalletAddress(ValidationError):
    default_reason = "Invalid wallet address format"


class DuplicateWallet(SettlementError):
    status_code = 409
    default_reason = "Wallet address already registered"


class WithdrawalBlocked(SettlementError):
    """Fraud/risk guard rejection; reason names the rule that fired"""
    status_code = 403
    default_reason = "Withdrawal blocked"

    def __init__(self, reason: Optional[str] = None):
        self.rule = reason
        super().__init__(f"Withdrawal blocked: {reason}" if reason else None)


class PaymentNotCompleted(SettlementError):
    status_code = 409
    default_reason = "Payment not completed"


class EscrowNotFound(NotFound):
    default_reason = "Escrow not found"


class EscrowNotHeld(SettlementError):
    status_code = 409
    default_reason = "Escrow is not in held status"


class InvalidStateTransition(SettlementError):
    status_code = 409
    default_reason = "Invalid status transition"


class InvalidSignature(SettlementError):
    status_code = 401
    default_reason = "Invalid webhook signature"


class ProviderError(SettlementError):
    """Upstream provider failure; retriable, never leaks provider internals"""
    status_code = 502
    default_reason = "Payment provider unavailable, please try again later"

    def __init__(self, detail: Optional[str] = None, provider: Optional[str] = None):
        # detail is for logs only; callers always see the generic reason
        self.detail = detail
        self.provider = provider
        super().__init__(None)


class ProviderTimeout(ProviderError):
    """Provider did not answer within the configured timeout"""
    status_code = 504
    default_reason = "Payment provider timed out, please try again later"
