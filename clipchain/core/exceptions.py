"""
Custom Exceptions
=================

Unified exception hierarchy for the generation-and-assembly pipeline.

Poller and continuity errors are raised to the orchestrator, which decides
through its failure policy whether they are fatal to the job or only to a
single segment.
"""

from typing import Optional, Dict, Any


class ClipChainError(Exception):
    """Base exception for all clipchain errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.recoverable = recoverable

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class ConfigurationError(ClipChainError):
    """Invalid or unreadable configuration."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, details=details, **kwargs)


class ValidationError(ClipChainError):
    """Input/output validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        constraint: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]
        if constraint:
            details["constraint"] = constraint
        super().__init__(message, details=details, **kwargs)


class SecurityError(ClipChainError):
    """Security-related errors (path traversal, injection attempts, etc.)."""

    def __init__(
        self,
        message: str,
        attempted_path: Optional[str] = None,
        security_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if attempted_path:
            # Don't expose full paths in error details
            details["attempted_path"] = "***REDACTED***"
        if security_type:
            details["security_type"] = security_type
        super().__init__(message, recoverable=False, details=details, **kwargs)


# =============================================================================
# Remote Service Errors
# =============================================================================


class ServiceError(ClipChainError):
    """Errors raised while talking to a remote generation service."""

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if service:
            details["service"] = service
        if status_code:
            details["status_code"] = status_code
        if response_body:
            # Truncate large responses
            details["response_body"] = response_body[:500] if len(response_body) > 500 else response_body
        self.status_code = status_code
        super().__init__(message, details=details, **kwargs)


class SubmissionError(ServiceError):
    """Malformed request or immediate remote rejection; fatal to that submission only."""


class TransientPollError(ServiceError):
    """Status check kept failing at the transport level after bounded retries."""

    def __init__(self, message: str, attempts: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        if attempts:
            details["attempts"] = attempts
        kwargs.setdefault("recoverable", True)
        super().__init__(message, details=details, **kwargs)


class QuotaExceededError(ServiceError):
    """
    Rate limit or quota exhausted.

    Never retried by the poller. The orchestrator's throttle treats it as a
    signal to lower concurrency.
    """

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if retry_after:
            details["retry_after_seconds"] = retry_after
        self.retry_after = retry_after
        kwargs.setdefault("status_code", 429)
        super().__init__(message, recoverable=False, details=details, **kwargs)


class OperationTimeoutError(ClipChainError):
    """Poll budget exhausted before the remote operation became terminal."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        attempts: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        if attempts:
            details["attempts"] = attempts
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(message, recoverable=True, details=details, **kwargs)


# =============================================================================
# Media Errors
# =============================================================================


class MissingArtifactError(ClipChainError):
    """Frame extraction attempted on an absent, partial or unreadable file."""

    def __init__(self, message: str, artifact_path: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if artifact_path:
            details["artifact_path"] = artifact_path
        super().__init__(message, recoverable=False, details=details, **kwargs)


class EncodingToolError(ClipChainError):
    """The external encoding tool failed; fatal to the job."""

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        stderr: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if exit_code is not None:
            details["exit_code"] = exit_code
        if stderr:
            # Keep the tail, that is where ffmpeg reports the failure
            details["stderr"] = stderr[-1000:]
        self.exit_code = exit_code
        super().__init__(message, recoverable=False, details=details, **kwargs)


class NothingToStitchError(ClipChainError):
    """Every segment of the chain failed, there is nothing to encode."""

    def __init__(self, message: str, skipped: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        if skipped is not None:
            details["skipped_segments"] = skipped
        super().__init__(message, recoverable=False, details=details, **kwargs)


class JobCancelledError(ClipChainError):
    """Raised inside the orchestrator when a job was cancelled between stages."""

    def __init__(self, job_id: str, stage: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["job_id"] = job_id
        if stage:
            details["stage"] = stage
        super().__init__(f"Job {job_id} was cancelled", details=details, **kwargs)
