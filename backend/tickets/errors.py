"""Domain error codes for checkout, payment confirmation and invites."""

from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    VALIDATION = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    ORDER_NOT_CANCELLABLE = "ORDER_NOT_CANCELLABLE"
    EXTERNAL_SERVICE = "EXTERNAL_SERVICE_ERROR"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code = ErrorCode.VALIDATION
    status_code = 400
    default_message = "Request could not be processed."

    def __init__(self, message: str | None = None, *, code: ErrorCode | None = None) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(DomainError):
    """Raised when caller input violates a precondition."""


class AuthorizationError(DomainError):
    """Raised when the principal is not allowed to act on a resource."""

    code = ErrorCode.UNAUTHORIZED
    status_code = 403
    default_message = "You are not allowed to perform this action."


class NotFoundError(DomainError):
    """Raised when a resource does not exist or is not visible to the principal."""

    code = ErrorCode.NOT_FOUND
    status_code = 404
    default_message = "Not found."


class ConflictError(DomainError):
    """Raised when a state transition lost a race or was already applied."""

    code = ErrorCode.CONFLICT
    status_code = 409
    default_message = "The resource is not in the expected state."


class OrderNotCancellableError(DomainError):
    code = ErrorCode.ORDER_NOT_CANCELLABLE
    default_message = "Only pending orders can be cancelled."


class ExternalServiceError(DomainError):
    """Raised when the payment provider fails. The message never carries provider detail."""

    code = ErrorCode.EXTERNAL_SERVICE
    status_code = 500
    default_message = "Payment provider is unavailable. Please try again later."


class SignatureError(DomainError):
    code = ErrorCode.INVALID_SIGNATURE
    default_message = "Invalid signature."
