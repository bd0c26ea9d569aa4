"""
Shared error handling for the health API proxy.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, ConfigDict


class ErrorResponse(BaseModel):
    """Standard error response format.

    Diagnostic fields (``detail``, ``endpoint``, ``url``, ``timeoutMs`` ...)
    are carried as extra top-level keys.
    """

    model_config = ConfigDict(extra="allow")

    request_id: Optional[str] = None
    code: str
    message: str


class AccessLayerException(Exception):
    """Base exception for proxy services."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            **self.details
        )


class AuthenticationError(AccessLayerException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class UnsupportedMediaTypeError(AccessLayerException):
    """Inbound body uses a content type the proxy cannot re-encode."""

    status_code = 415

    def __init__(self, mime_type: str = ""):
        message = f"Unsupported Content-Type: {mime_type}" if mime_type else "Unsupported Content-Type"
        super().__init__("UNSUPPORTED_MEDIA_TYPE", message)


class MethodNotAllowedError(AccessLayerException):
    """Inbound HTTP method is outside the forwarded set."""

    status_code = 405

    def __init__(self, method: str, allowed: tuple):
        self.allowed = allowed
        super().__init__(
            "METHOD_NOT_ALLOWED",
            "proxy error: allow only {} and {} method.".format(", ".join(allowed[:-1]), allowed[-1]),
            {"method": method},
        )


class ExternalServiceError(AccessLayerException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class UpstreamConfigurationError(ExternalServiceError):
    """No usable token could be obtained, so the upstream was never contacted."""

    status_code = 401

    def __init__(self, service: str, tenant: str):
        super().__init__(
            service,
            "Cannot create token, please check the username and password configuration.",
            {"tenant": tenant},
        )
        self.code = "UPSTREAM_CONFIGURATION_ERROR"


class UpstreamTimeoutError(ExternalServiceError):
    """Client-side request timeout against an upstream."""

    status_code = 504

    def __init__(self, service: str, url: str, timeout_ms: Optional[int], cause: Exception):
        self.url = url
        self.timeout_ms = timeout_ms
        self.cause = cause
        super().__init__(service, "upstream request timeout", {"url": url, "timeoutMs": timeout_ms})
        self.code = "UPSTREAM_TIMEOUT"


class UpstreamConnectionError(ExternalServiceError):
    """Transient network failure that survived every retry."""

    def __init__(self, service: str, url: str, cause: Exception, attempts: int):
        self.url = url
        self.cause = cause
        self.attempts = attempts
        super().__init__(
            service,
            f"upstream unreachable: {cause.__class__.__name__}",
            {"url": url, "attempts": attempts},
        )
        self.code = "UPSTREAM_UNREACHABLE"


class UpstreamResponseError(ExternalServiceError):
    """Upstream answered with a non-success status."""

    def __init__(self, service: str, url: str, status_code: int, body: str, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.upstream_status = status_code
        self.body = body
        self.headers = headers or {}
        super().__init__(
            service,
            f"upstream responded with status {status_code}",
            {"url": url, "status": status_code, "body": body},
        )
        self.code = "UPSTREAM_ERROR"
        self.status_code = status_code


class GatewayTimeoutError(AccessLayerException):
    """Client-facing upstream timeout signal."""

    status_code = 504

    def __init__(self, detail: str, endpoint: Optional[str], url: str, timeout_ms: Optional[int]):
        super().__init__(
            "UPSTREAM_TIMEOUT",
            "upstream request timeout",
            {"detail": detail, "endpoint": endpoint, "url": url, "timeoutMs": timeout_ms},
        )
