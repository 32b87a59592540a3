"""
Security Utilities
==================

Job directory containment, job id sanitising and secret redaction for
error messages and logs.
"""

import re
import logging
from pathlib import Path
from typing import Union

from .exceptions import SecurityError

logger = logging.getLogger(__name__)


# Traversal forms rejected before any path is resolved
_TRAVERSAL = re.compile(r"(\.\.[/\\])|(^~)|(\x00)|(%2e%2e)|(%252e)", re.IGNORECASE)

_SECRET_PATTERNS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9_\-\.]+"), "Bearer ***REDACTED***"),
    (re.compile(r"Key\s+[A-Za-z0-9_\-\.:]{16,}"), "Key ***REDACTED***"),
    (re.compile(r"AIza[A-Za-z0-9_\-]{35}"), "AIza***REDACTED***"),
    (re.compile(r"([?&]key=)[A-Za-z0-9_\-]+"), r"\1***REDACTED***"),
    (re.compile(r"(FAL_API_KEY|GOOGLE_API_KEY)=\S+"), r"\1=***REDACTED***"),
]


class PathValidator:
    """
    Keeps job artifacts inside the output directory.

    Usage:
        validator = PathValidator(base_path="./output")
        validator.validate("job-1/segment_000.mp4")  # OK
        validator.validate("../../etc/passwd")  # Raises SecurityError
    """

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def validate(self, path: Union[str, Path]) -> Path:
        """Resolve ``path`` against the base directory, refusing escapes."""
        path_str = str(path)
        if _TRAVERSAL.search(path_str):
            logger.warning(f"Blocked traversal attempt: {path_str!r}")
            raise SecurityError(
                "Path contains traversal sequence",
                attempted_path=path_str,
                security_type="path_traversal",
            )

        candidate = Path(path)
        resolved = (candidate if candidate.is_absolute() else self.base_path / candidate).resolve()

        if resolved != self.base_path and self.base_path not in resolved.parents:
            logger.warning(f"Blocked path outside output directory: {resolved}")
            raise SecurityError(
                "Path is outside the output directory",
                attempted_path=path_str,
                security_type="path_traversal",
            )
        return resolved


def sanitize_filename(name: str, max_length: int = 128) -> str:
    """Reduce a job id to characters that are safe as a directory name."""
    sanitized = re.sub(r"[^\w\-.]", "_", name or "")
    sanitized = re.sub(r"_+", "_", sanitized).strip("._-")[:max_length]
    return sanitized or "unnamed"


def redact_api_key(text: str) -> str:
    """Mask API keys and auth tokens in ``text``."""
    if not text:
        return text
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text
