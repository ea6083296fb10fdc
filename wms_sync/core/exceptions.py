"""
Custom Exception Hierarchy

Structured exceptions shared by the transport, the webhook queue, the
order coordinator and the HTTP layer.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"
    CONFIGURATION_ERROR = "ERR_1007"

    # WMS transport errors (5xxx)
    WMS_NETWORK_ERROR = "ERR_5001"
    WMS_AUTH_ERROR = "ERR_5002"
    WMS_CLIENT_ERROR = "ERR_5003"
    WMS_SERVER_ERROR = "ERR_5004"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5005"

    # Queue / sync errors (6xxx)
    WEBHOOK_JOB_NOT_FOUND = "ERR_6001"
    INVALID_EVENT_TABLE = "ERR_6002"
    RECONCILIATION_FAILED = "ERR_6003"
    ORDER_NOT_FOUND = "ERR_6004"
    SYNC_BATCH_NOT_FOUND = "ERR_6005"


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


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


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


class ConfigurationError(AppException):
    """Required account-level configuration is missing or invalid"""

    def __init__(self, setting: str, message: str | None = None):
        super().__init__(
            message=message or f"Missing required configuration: {setting}",
            error_code=ErrorCode.CONFIGURATION_ERROR,
            status_code=500,
            details={"setting": setting}
        )


class EventTableError(AppException):
    """Priority / prerequisite tables failed start-up validation"""

    def __init__(self, problems: list[str]):
        super().__init__(
            message="Invalid webhook event tables: " + "; ".join(problems),
            error_code=ErrorCode.INVALID_EVENT_TABLE,
            status_code=500,
            details={"problems": problems}
        )


class ReconciliationError(AppException):
    """Applying a remote payload to a local order failed mid-way"""

    def __init__(
        self,
        message: str,
        order_id: int | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.RECONCILIATION_FAILED,
            status_code=422,
            details=details
        )
        if order_id is not None:
            self.details["order_id"] = order_id


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None,
        status_code: int = 503
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        self.details["service"] = service_name


class WmsApiError(ExternalServiceException):
    """Base class for failures talking to the WMS REST API"""

    retryable: bool = False
    default_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        http_status: int | None = None,
        status_code: int = 502
    ):
        super().__init__(
            service_name="wms",
            message=f"WMS API error: {message}",
            error_code=self.default_code,
            details=details,
            status_code=status_code
        )
        self.http_status = http_status
        if http_status is not None:
            self.details["http_status"] = http_status

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500,
        **kwargs: Any
    ) -> "WmsApiError":
        """
        Build the error from an HTTP response in a uniform way.

        Args:
            operation: "METHOD /endpoint" of the failed call
            response: response object (httpx.Response)
            message: human readable message (built from the status if omitted)
            max_response_chars: response_text is truncated to keep logs small
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "response_text": response_text[:max_response_chars],
            },
            http_status=status_code,
            **kwargs
        )


class NetworkError(WmsApiError):
    """Connection failure or timeout before a response arrived"""

    retryable = True
    default_code = ErrorCode.WMS_NETWORK_ERROR


class AuthError(WmsApiError):
    """401/403 from the WMS; callers re-authenticate once and retry"""

    default_code = ErrorCode.WMS_AUTH_ERROR


class RateLimitedError(WmsApiError):
    """Quota exhausted and the mandated wait exceeds what we are willing to block"""

    retryable = True
    default_code = ErrorCode.RATE_LIMITED

    def __init__(
        self,
        message: str,
        retry_after_seconds: float,
        details: dict[str, Any] | None = None,
        **kwargs: Any
    ):
        super().__init__(message, details=details, status_code=429, **kwargs)
        self.retry_after_seconds = retry_after_seconds
        self.details["retry_after_seconds"] = round(retry_after_seconds, 1)


class ClientError(WmsApiError):
    """Non-retryable 4xx carrying the remote message"""

    default_code = ErrorCode.WMS_CLIENT_ERROR


class ServerError(WmsApiError):
    """5xx from the WMS after the retry budget was spent"""

    retryable = True
    default_code = ErrorCode.WMS_SERVER_ERROR


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
