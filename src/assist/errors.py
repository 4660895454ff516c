"""
Typed errors for the call assist service.

Every failure that can reach the operator is one of the classes below. Each
carries a stable `code`, an `error_type` category, a `severity` and optional
`details`, and serializes to the `error` event payload with `to_payload()`.

Severities:
- fatal: the session cannot proceed (bad config, capture init failure, auth)
- error: an operation failed and the operator may retry (save, restart)
- warning: informational; the session keeps running
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class Severity(str, Enum):
    """How an error affects the running session."""
    FATAL = "fatal"
    ERROR = "error"
    WARNING = "warning"


class ErrorType(str, Enum):
    """Error categories surfaced on the transport."""
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INITIALIZATION_ERROR = "INITIALIZATION_ERROR"
    STREAM_ERROR = "STREAM_ERROR"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    RECOGNITION_ERROR = "RECOGNITION_ERROR"
    REASONING_ERROR = "REASONING_ERROR"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"


class AssistError(Exception):
    """Base class for all typed errors."""

    error_type: ErrorType = ErrorType.STREAM_ERROR
    default_code: str = "UNKNOWN_ERROR"
    default_severity: Severity = Severity.ERROR

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        severity: Optional[Severity] = None,
        error_type: Optional[ErrorType] = None,
        details: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.severity = severity or self.default_severity
        if error_type is not None:
            self.error_type = error_type
        self.details = list(details or [])

    @property
    def is_fatal(self) -> bool:
        return self.severity == Severity.FATAL

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "message": self.message,
            "code": self.code,
            "type": self.error_type.value,
            "severity": self.severity.value,
        }
        if self.details:
            payload["details"] = list(self.details)
        return payload

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ConfigurationError(AssistError):
    """Bad channel mapping, missing device, or unusable settings."""
    error_type = ErrorType.CONFIGURATION_ERROR
    default_code = "INVALID_CONFIGURATION"
    default_severity = Severity.FATAL


class CaptureError(AssistError):
    """Capture device failures (permission, busy, backend missing, silence)."""
    error_type = ErrorType.INITIALIZATION_ERROR
    default_code = "UNKNOWN_ERROR"
    default_severity = Severity.FATAL


class DemuxError(AssistError):
    """A chunk could not be split into frames. The data is skipped."""
    error_type = ErrorType.PROCESSING_ERROR
    default_code = "FRAME_PROCESSING_FAILED"
    default_severity = Severity.WARNING


class RecognitionError(AssistError):
    """Speech provider failure on one recognition session."""
    error_type = ErrorType.RECOGNITION_ERROR
    default_code = "PROVIDER_ERROR"
    default_severity = Severity.WARNING

    def __init__(
        self,
        message: str,
        *,
        is_duration_limit: bool = False,
        provider_code: Optional[Any] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.is_duration_limit = is_duration_limit
        self.provider_code = provider_code


class ReasoningError(AssistError):
    """Extraction or response stage failure."""
    error_type = ErrorType.REASONING_ERROR
    default_code = "RESPONSE_FAILED"
    default_severity = Severity.WARNING


class PersistenceError(AssistError):
    """Conversation log write failure."""
    error_type = ErrorType.PERSISTENCE_ERROR
    default_code = "SAVE_FAILED"
    default_severity = Severity.ERROR


class AuthError(AssistError):
    """Missing, invalid or expired session credential."""
    error_type = ErrorType.AUTH_ERROR
    default_code = "AUTH_INVALID"
    default_severity = Severity.FATAL


class ProtocolError(AssistError):
    """Malformed or out-of-order client event."""
    error_type = ErrorType.PROTOCOL_ERROR
    default_code = "INVALID_MESSAGE"
    default_severity = Severity.WARNING


def unexpected_error(exc: BaseException) -> AssistError:
    """Wrap an untyped exception so it can be reported on the transport."""
    return AssistError(
        str(exc) or type(exc).__name__,
        code="UNKNOWN_ERROR",
        severity=Severity.ERROR,
    )
