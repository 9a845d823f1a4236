"""
Custom Exception Hierarchy

Maps the sync error taxonomy (validation, not-found, transient, authentication,
conflict, capacity, infrastructure) onto HTTP-aware application exceptions.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    RATE_LIMITED = "ERR_1006"
    PERSISTENCE_ERROR = "ERR_1007"

    # Job errors (2xxx)
    JOB_NOT_FOUND = "ERR_2001"
    UNSUPPORTED_JOB_TYPE = "ERR_2002"
    JOB_NOT_CANCELLABLE = "ERR_2003"

    # Event errors (3xxx)
    UNSUPPORTED_EVENT_TYPE = "ERR_3001"
    EVENT_QUEUE_FULL = "ERR_3002"

    # Webhook errors (4xxx)
    WEBHOOK_INVALID_SIGNATURE = "ERR_4001"
    WEBHOOK_STALE_TIMESTAMP = "ERR_4002"
    WEBHOOK_INVALID_PAYLOAD = "ERR_4003"

    # External service errors (5xxx)
    BLING_API_ERROR = "ERR_5001"
    BLING_AUTH_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    TOKEN_NOT_FOUND = "ERR_5005"
    TOKEN_REFRESH_FAILED = "ERR_5006"

    # Price errors (6xxx)
    PRODUCT_NOT_FOUND = "ERR_6001"
    INVALID_PRICE_DATA = "ERR_6002"
    PRICE_VALIDATION_FAILED = "ERR_6003"
    PRICE_CONFLICT = "ERR_6004"
    PRICE_LOCK_TIMEOUT = "ERR_6005"
    PRICE_CONFLICT_NOT_FOUND = "ERR_6006"


class AppException(Exception):
    """Base exception for all application errors"""

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
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


# ---------------------------------------------------------------------------
# Validation - נדחה מיד, לעולם לא מנוסה שוב
# ---------------------------------------------------------------------------

class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        status_code: int = 400,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if field:
            self.details["field"] = field


class UnsupportedJobTypeError(ValidationException):
    """Raised when a job type has no registered handler"""

    def __init__(self, job_type: str):
        super().__init__(
            message=f"Unsupported job type: {job_type}",
            field="job_type",
            error_code=ErrorCode.UNSUPPORTED_JOB_TYPE,
            details={"job_type": job_type},
        )


class UnsupportedEventTypeError(ValidationException):
    """Raised when an event type has no subscriber"""

    def __init__(self, event_type: str):
        super().__init__(
            message=f"Unsupported event type: {event_type}",
            field="event_type",
            error_code=ErrorCode.UNSUPPORTED_EVENT_TYPE,
            details={"event_type": event_type},
        )


class WebhookSignatureError(ValidationException):
    """Raised when the webhook HMAC signature is missing or wrong"""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(
            message=message,
            error_code=ErrorCode.WEBHOOK_INVALID_SIGNATURE,
            status_code=401,
        )


class WebhookTimestampError(ValidationException):
    """Raised when the webhook timestamp is missing or outside the freshness window"""

    def __init__(self, message: str, age_seconds: float | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.WEBHOOK_STALE_TIMESTAMP,
            status_code=401,
            details={"age_seconds": age_seconds} if age_seconds is not None else None,
        )


class WebhookPayloadError(ValidationException):
    """Raised when the webhook body is malformed or its event is not allowed"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.WEBHOOK_INVALID_PAYLOAD,
            status_code=422,
            details=details,
        )


class InvalidPriceDataError(ValidationException):
    """Raised when Bling returns a product without a usable price"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_PRICE_DATA,
            details=details,
        )


class PriceValidationError(ValidationException):
    """Raised when a computed price change exceeds the allowed bounds"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.PRICE_VALIDATION_FAILED,
            details=details,
        )


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

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


class JobNotFoundError(NotFoundException):
    def __init__(self, job_id: str):
        super().__init__("Job", job_id, ErrorCode.JOB_NOT_FOUND)


class TokenNotFoundError(NotFoundException):
    def __init__(self, tenant_id: str):
        super().__init__("Bling token", tenant_id, ErrorCode.TOKEN_NOT_FOUND)


class ProductNotFoundError(NotFoundException):
    def __init__(self, product_id: Any):
        super().__init__("Product", product_id, ErrorCode.PRODUCT_NOT_FOUND)


class PriceConflictNotFoundError(NotFoundException):
    def __init__(self, conflict_id: Any):
        super().__init__("Price conflict", conflict_id, ErrorCode.PRICE_CONFLICT_NOT_FOUND)


class JobNotCancellableError(AppException):
    """Raised when cancelling a job that already left the queue"""

    def __init__(self, job_id: str, status: str):
        super().__init__(
            message=f"Job {job_id} cannot be cancelled in status '{status}'",
            error_code=ErrorCode.JOB_NOT_CANCELLABLE,
            status_code=409,
            details={"job_id": job_id, "status": status},
        )


# ---------------------------------------------------------------------------
# External service - transient / authentication
# ---------------------------------------------------------------------------

class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None,
        status_code: int = 503,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        self.details["service"] = service_name


class BlingApiError(ExternalServiceException):
    """Non-retryable Bling API error (4xx other than 401/429)"""

    def __init__(
        self,
        message: str,
        upstream_status: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            service_name="bling",
            message=f"Bling API error: {message}",
            error_code=ErrorCode.BLING_API_ERROR,
            details=details,
            status_code=502,
        )
        self.upstream_status = upstream_status
        if upstream_status is not None:
            self.details["upstream_status"] = upstream_status

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "BlingApiError":
        """יצירת שגיאה מתוך httpx.Response בצורה עקבית (חיתוך גוף התשובה ללוגים)"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"{operation} returned status {status_code}",
            upstream_status=status_code,
            details={
                "operation": operation,
                "response_text": response_text[:max_response_chars],
            },
        )


class BlingTransientError(BlingApiError):
    """Timeout / transport error / 5xx that survived every retry"""


class BlingRateLimitError(BlingTransientError):
    """429 that survived every retry"""

    def __init__(self, message: str, retry_after_seconds: float):
        super().__init__(message, upstream_status=429, details={"retry_after_seconds": retry_after_seconds})
        self.error_code = ErrorCode.RATE_LIMITED


class BlingAuthenticationError(ExternalServiceException):
    """Bling rejected the credentials even after a coordinated refresh"""

    def __init__(self, tenant_id: str, message: str = "Bling rejected the access token"):
        super().__init__(
            service_name="bling",
            message=message,
            error_code=ErrorCode.BLING_AUTH_ERROR,
            details={"tenant_id": tenant_id},
            status_code=502,
        )


class TokenRefreshError(BlingAuthenticationError):
    """Raised when refreshing a tenant's token fails"""

    def __init__(self, tenant_id: str, reason: str):
        super().__init__(tenant_id, message=f"Token refresh failed for tenant {tenant_id}: {reason}")
        self.error_code = ErrorCode.TOKEN_REFRESH_FAILED


class TokenRefreshTimeoutError(TokenRefreshError):
    """Raised when waiting on a concurrent refresh exceeds the bounded wait"""

    def __init__(self, tenant_id: str, waited_seconds: float):
        super().__init__(tenant_id, f"timed out after {waited_seconds}s waiting for concurrent refresh")
        self.details["waited_seconds"] = waited_seconds


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
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


# ---------------------------------------------------------------------------
# Conflict / capacity / infrastructure
# ---------------------------------------------------------------------------

class PriceConflictError(AppException):
    """Raised when a manual local edit blocks a remote price update"""

    def __init__(self, product_id: Any, resolution: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Price conflict for product {product_id} (resolution: {resolution})",
            error_code=ErrorCode.PRICE_CONFLICT,
            status_code=409,
            details={"product_id": str(product_id), "resolution": resolution, **(details or {})},
        )


class PriceLockTimeoutError(AppException):
    """Raised when waiting on a concurrent sync of the same product takes too long"""

    def __init__(self, product_key: str, waited_seconds: float):
        super().__init__(
            message=f"Timed out waiting for concurrent price sync of {product_key}",
            error_code=ErrorCode.PRICE_LOCK_TIMEOUT,
            status_code=503,
            details={"product": product_key, "waited_seconds": waited_seconds},
        )


class EventQueueFullError(AppException):
    """Raised when publishing into a full event queue"""

    def __init__(self, event_type: str, capacity: int):
        super().__init__(
            message=f"Event queue is full ({capacity}), rejected {event_type}",
            error_code=ErrorCode.EVENT_QUEUE_FULL,
            status_code=503,
            details={"event_type": event_type, "capacity": capacity},
        )


class PersistenceError(AppException):
    """Raised when orchestration state cannot be written"""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            message=f"Failed to persist {operation}: {reason}",
            error_code=ErrorCode.PERSISTENCE_ERROR,
            status_code=500,
            details={"operation": operation},
        )
