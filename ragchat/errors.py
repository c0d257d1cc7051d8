"""
Structured Error Handling for the chat service

Provides a hierarchy of exceptions for the request pipeline. Each error
carries the HTTP status the wire layer answers with and a public message
that never leaks internals; the specific cause stays on the exception for
logging.
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class RAGError(Exception):
    """
    Base exception for the chat service.

    All service-specific errors should inherit from this class.
    """

    status_code: int = 500
    public_message: str = "internal error"

    def __init__(
        self,
        message: str,
        error_code: str = "RAG_ERROR",
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        """
        Initialize error.

        Args:
            message: Human-readable error message (internal, may be detailed)
            error_code: Machine-readable error code
            severity: Error severity level
            context: Additional context for debugging
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for structured logs"""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "severity": self.severity.value,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.error_code}: {self.message})"


class NonRetriableError(RAGError):
    """
    Error that should NOT be retried.

    Typically permanent issues like bad configuration or malformed input.
    """

    def __init__(self, message: str, error_code: str = "NON_RETRIABLE_ERROR", **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(message, error_code, **kwargs)


# ============================================================================
# Request-path errors
# ============================================================================


class ValidationError(NonRetriableError):
    """Input validation failed (malformed JSON, empty question, bad lang, method)"""

    status_code = 400

    def __init__(self, message: str, status_code: int = 400, field: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(message, error_code="VALIDATION_ERROR", **kwargs)
        self.status_code = status_code
        self.public_message = message
        self.field = field


class AuthError(NonRetriableError):
    """Bearer token missing or rejected. `reason` is for internal logs only."""

    status_code = 401
    public_message = "invalid auth token"

    def __init__(self, reason: str, public_message: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(reason, error_code="AUTH_ERROR", **kwargs)
        self.reason = reason
        if public_message:
            self.public_message = public_message


class AuthNotConfiguredError(NonRetriableError):
    """No signing secret configured; the chat endpoint cannot authenticate anyone"""

    status_code = 500
    public_message = "auth not configured"

    def __init__(self, message: str = "jwt not configured", **kwargs):
        super().__init__(message, error_code="AUTH_NOT_CONFIGURED", **kwargs)


class AdmissionError(NonRetriableError):
    """Per-client request budget exhausted or client identity unresolvable"""

    status_code = 429
    public_message = "rate limit exceeded"

    def __init__(self, message: str, retry_after_seconds: Optional[int] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(message, error_code="RATE_LIMITED", **kwargs)
        self.retry_after_seconds = retry_after_seconds


# ============================================================================
# Upstream and synthesis errors
# ============================================================================


class UpstreamError(RAGError):
    """A provider call failed. Never retried: one failure fails the request."""

    def __init__(self, message: str, error_code: str = "UPSTREAM_ERROR", status_code: Optional[int] = None, **kwargs):
        super().__init__(message, error_code=error_code, **kwargs)
        self.upstream_status = status_code


class EmbeddingError(UpstreamError):
    """Embedding provider error"""

    public_message = "embedding error"

    def __init__(self, message: str, model: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="EMBEDDING_ERROR", **kwargs)
        self.model = model


class LLMError(UpstreamError):
    """Chat-completion provider error"""

    public_message = "generation error"

    def __init__(self, message: str, model: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="LLM_ERROR", **kwargs)
        self.model = model


class SynthesisError(RAGError):
    """Model reply was not the structured {answer, sources} object"""

    public_message = "generation error"

    def __init__(self, message: str, raw_text: str = "", **kwargs):
        super().__init__(message, error_code="SYNTHESIS_ERROR", **kwargs)
        self.raw_text = raw_text


class StreamingUnavailableError(RAGError):
    """Client asked for server-sent events but streaming is switched off"""

    status_code = 501
    public_message = "streaming not supported"

    def __init__(self, message: str = "streaming disabled", **kwargs):
        super().__init__(message, error_code="STREAMING_UNAVAILABLE", severity=ErrorSeverity.MEDIUM, **kwargs)


# ============================================================================
# Startup errors
# ============================================================================


class ConfigurationError(NonRetriableError):
    """Invalid or missing configuration"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIG_ERROR", **kwargs)


class VectorIndexError(RAGError):
    """Index-related errors (loading, dimension mismatch)"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="INDEX_ERROR", severity=ErrorSeverity.CRITICAL, **kwargs)


# ============================================================================
# Error Utilities
# ============================================================================


def format_error_for_logging(error: Exception, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Format error for structured logging"""
    result: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "message": str(error),
    }

    if request_id:
        result["request_id"] = request_id

    if isinstance(error, RAGError):
        result.update(error.to_dict())

    if error.__cause__:
        result["caused_by"] = {
            "type": type(error.__cause__).__name__,
            "message": str(error.__cause__),
        }

    return result
