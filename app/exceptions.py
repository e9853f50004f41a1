"""
Exception Classes - Strongly typed exception hierarchy.

Each class maps to one user-visible outcome at the route boundary.
"""

from uuid import UUID


class AppraisalError(Exception):
    """Base exception for all appraisal errors."""

    kind = "internal_error"


class ValidationError(AppraisalError):
    """Raised when submitted input is missing or malformed. Never consumes entitlement."""

    kind = "validation_error"

    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)


class EntitlementDenied(AppraisalError):
    """Raised when an account has no allowance or credits left."""

    kind = "limit_reached"

    def __init__(self, account_id: UUID | None, reason: str, guidance: str) -> None:
        self.account_id = account_id
        self.reason = reason
        self.guidance = guidance
        super().__init__(f"Entitlement denied ({reason}): {guidance}")


class TransportError(AppraisalError):
    """Raised when the analysis provider cannot be reached or refuses the call."""

    kind = "transport_error"

    def __init__(self, message: str, retryable: bool = True, status_code: int | None = None):
        self.message = message
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(f"Analysis provider error: {message}")


class ParseError(AppraisalError):
    """Raised when the provider reply cannot be decoded into a valuation result."""

    kind = "parse_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Could not parse valuation result: {message}")


class StorageError(AppraisalError):
    """Raised when a blob upload or record write fails."""

    kind = "storage_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Storage error: {message}")


class RequestNotFoundError(AppraisalError):
    """Raised when a valuation request doesn't exist (or isn't visible to the caller)."""

    kind = "not_found"

    def __init__(self, request_id: UUID) -> None:
        self.request_id = request_id
        super().__init__(f"Valuation request not found: {request_id}")


class AccountNotFoundError(AppraisalError):
    """Raised when an account doesn't exist."""

    kind = "account_not_found"

    def __init__(self, account_id: UUID) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class InvalidTransitionError(AppraisalError):
    """Raised when a status change is not in the lifecycle graph or lost a race."""

    kind = "invalid_transition"

    def __init__(self, request_id: UUID, current: str, target: str) -> None:
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(f"Request {request_id} cannot move from {current} to {target}")
