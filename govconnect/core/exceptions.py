"""
Custom Exception Hierarchy

Structured exceptions for the channel layer. Every failure belongs to one of
four categories (absence, transport, conflict, validation) and callers decide
how to surface it from the category, never from the message text.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Channel session errors (2xxx)
    SESSION_NOT_FOUND = "ERR_2001"
    DUPLICATE_NUMBER = "ERR_2002"
    PAIRING_FAILED = "ERR_2003"

    # Conversation errors (3xxx)
    CONVERSATION_NOT_FOUND = "ERR_3001"
    TAKEOVER_STATE_CONFLICT = "ERR_3002"
    TAKEOVER_REASON_REQUIRED = "ERR_3003"
    EMPTY_MESSAGE = "ERR_3004"

    # External service errors (5xxx)
    BACKEND_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"


class ErrorCategory(str, Enum):
    """How a failure must be surfaced to the admin"""

    ABSENCE = "absence"        # normal flow, drives a "create" prompt
    TRANSPORT = "transport"    # notify with retry, keep prior state
    CONFLICT = "conflict"      # dedicated resolution flow
    VALIDATION = "validation"  # caught before any network call


class AppException(Exception):
    """Base exception for all application errors"""

    category: ErrorCategory = ErrorCategory.TRANSPORT

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.error_code.value,
                "category": self.category.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails, before any request is made"""

    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        field: str | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource does not exist"""

    category = ErrorCategory.ABSENCE

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class SessionNotFoundError(NotFoundException):
    """The tenant has no channel session yet"""

    def __init__(self, tenant_id: str):
        super().__init__("Channel session", tenant_id, ErrorCode.SESSION_NOT_FOUND)


class ConversationNotFoundError(NotFoundException):
    """The conversation key is unknown to the backend"""

    def __init__(self, conversation_key: str):
        super().__init__("Conversation", conversation_key, ErrorCode.CONVERSATION_NOT_FOUND)


class ConflictException(AppException):
    """Base exception for state conflicts that need explicit resolution"""

    category = ErrorCategory.CONFLICT

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class DuplicateNumberConflict(ConflictException):
    """The paired WhatsApp number already belongs to another tenant"""

    def __init__(
        self,
        phone_number: str,
        owning_tenant_id: str,
        owning_tenant_name: str | None = None,
    ):
        super().__init__(
            message=f"WhatsApp number is already connected to tenant {owning_tenant_name or owning_tenant_id}",
            error_code=ErrorCode.DUPLICATE_NUMBER,
            details={
                "phone_number": phone_number,
                "owning_tenant_id": owning_tenant_id,
                "owning_tenant_name": owning_tenant_name or owning_tenant_id,
            },
        )


class TakeoverStateConflict(ConflictException):
    """Operation not allowed for the conversation's current responder state"""

    def __init__(self, conversation_key: str, current_state: str, required_state: str):
        super().__init__(
            message=(
                f"Conversation {conversation_key} is '{current_state}', "
                f"operation requires '{required_state}'"
            ),
            error_code=ErrorCode.TAKEOVER_STATE_CONFLICT,
            details={
                "conversation_key": conversation_key,
                "current_state": current_state,
                "required_state": required_state,
            },
        )


class InvalidStateTransitionError(ConflictException):
    """Raised when state transition is not allowed"""

    def __init__(self, current_state: str, target_state: str, subject: str | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "subject": subject,
            }
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    category = ErrorCategory.TRANSPORT

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        status_code: int = 503,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        self.details["service"] = service_name


class BackendError(ExternalServiceException):
    """Non-2xx response or `success: false` envelope from the backend"""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            service_name="backend",
            message=message,
            error_code=ErrorCode.BACKEND_ERROR,
            status_code=status_code or 502,
            details=details
        )
        self.http_status = status_code

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "BackendError":
        """
        Build a BackendError from an HTTP response in a consistent way.

        Args:
            operation: logical operation name (e.g. get_status, send_message)
            response: response object (httpx.Response)
            message: explicit error message; the envelope's `error` is used otherwise
            max_response_chars: cap on stored response text to keep logs small
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            status_code=status_code,
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when the backend times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            status_code=504,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


def classify(exc: BaseException) -> ErrorCategory:
    """Map any exception to the category that decides how it is surfaced."""
    if isinstance(exc, AppException):
        return exc.category
    return ErrorCategory.TRANSPORT
