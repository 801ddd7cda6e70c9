"""
SETTLEMENT ERRORS

Typed failures raised by the settlement core. The web layer maps these to
HTTP responses (see server.register_exception_handlers); nothing in the
core deals in status codes.
"""

from typing import List, Optional


class SettlementError(Exception):
    """Base exception for settlement errors."""
    pass


class ValidationError(SettlementError):
    """Raised when input to a settlement operation is rejected."""
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.message = message
        super().__init__(message)


class NotFoundError(SettlementError):
    """Raised when a charge, payment reference or user cannot be resolved."""
    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class AlreadyPaidError(SettlementError):
    """Raised when a user who already paid tries to pay the same charge again."""
    def __init__(self, charge_id: str, user_id: str):
        self.charge_id = charge_id
        self.user_id = user_id
        super().__init__(f"User {user_id} has already paid service charge {charge_id}")


class UnauthorizedError(SettlementError):
    """Raised when the acting user's stored role does not permit the operation."""
    def __init__(self, user_id: str, required: str):
        self.user_id = user_id
        self.required = required
        super().__init__(f"User {user_id} is not authorized: {required} role required")


class InvalidSignatureError(SettlementError):
    """Raised when a webhook signature does not match the payload."""
    def __init__(self, provider: str, reason: str = "signature mismatch"):
        self.provider = provider
        self.reason = reason
        super().__init__(f"Invalid {provider} webhook signature: {reason}")


class ProviderError(SettlementError):
    """
    Raised when a payment gateway call fails.

    ambiguous is True when the gateway may have accepted the request
    (timeouts), so the pending ledger entry must not be discarded.
    """
    def __init__(
        self,
        provider: str,
        message: str,
        reference: Optional[str] = None,
        status_code: Optional[int] = None,
        ambiguous: bool = False
    ):
        self.provider = provider
        self.reference = reference
        self.status_code = status_code
        self.ambiguous = ambiguous
        super().__init__(f"{provider} error: {message}")


class ConcurrentModificationError(SettlementError):
    """Raised when a whole-document save loses to a concurrent write."""
    def __init__(self, charge_id: str):
        self.charge_id = charge_id
        super().__init__(f"Service charge {charge_id} was modified concurrently; reload and retry")


class InvalidTransitionError(SettlementError):
    """Raised when attempting an invalid state transition."""
    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}"
        super().__init__(message)
