from typing import Optional, Dict, Any


class CommerceException(Exception):
    """Base exception for all commerce backend errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(CommerceException):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        code: str = "config_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=500, details=details)


class ResourceNotFoundError(CommerceException):
    """Raised when a requested resource is not found."""

    def __init__(
        self,
        message: str,
        code: str = "not_found",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=404, details=details)


class ValidationError(CommerceException):
    """Raised when an operation is not allowed for the current entity state."""

    def __init__(
        self,
        message: str,
        code: str = "validation_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=422, details=details)


class BillingError(CommerceException):
    """Raised when payment or subscription processing fails."""

    def __init__(
        self,
        message: str,
        code: str = "billing_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=400, details=details)


class GatewayError(BillingError):
    """
    A charge was rejected or could not be completed by the payment gateway.

    `retryable` marks infrastructure failures (network, 5xx, rate limits) that
    may succeed if the same call is repeated later. Declines are not retryable.
    """

    def __init__(
        self,
        message: str,
        code: str = "gateway_error",
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, details=details)
        self.retryable = retryable


class TransientGatewayError(GatewayError):
    """Gateway unreachable; the caller should retry later without counting an attempt."""

    def __init__(
        self,
        message: str,
        code: str = "gateway_unavailable",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, retryable=True, details=details)
        self.status_code = 503


class ExternalAPIError(CommerceException):
    """Raised when an outbound HTTP integration fails."""

    def __init__(
        self,
        message: str,
        code: str = "external_api_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=502, details=details)


class WebhookVerificationError(CommerceException):
    """Raised when an inbound webhook fails signature verification."""

    def __init__(
        self,
        message: str = "Invalid webhook signature",
        code: str = "invalid_signature",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=401, details=details)
