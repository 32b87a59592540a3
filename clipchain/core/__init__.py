"""
Core Module
===========

Core utilities, configuration, and exceptions for clipchain.
"""

from .config import Config, get_config, set_config, reset_config
from .exceptions import (
    ClipChainError,
    ConfigurationError,
    ValidationError,
    SecurityError,
    ServiceError,
    SubmissionError,
    TransientPollError,
    QuotaExceededError,
    OperationTimeoutError,
    MissingArtifactError,
    EncodingToolError,
    NothingToStitchError,
    JobCancelledError,
)
from .security import PathValidator, sanitize_filename, redact_api_key

__all__ = [
    # Configuration
    "Config",
    "get_config",
    "set_config",
    "reset_config",
    # Exceptions
    "ClipChainError",
    "ConfigurationError",
    "ValidationError",
    "SecurityError",
    "ServiceError",
    "SubmissionError",
    "TransientPollError",
    "QuotaExceededError",
    "OperationTimeoutError",
    "MissingArtifactError",
    "EncodingToolError",
    "NothingToStitchError",
    "JobCancelledError",
    # Security
    "PathValidator",
    "sanitize_filename",
    "redact_api_key",
]
