"""
Base Generation Service
=======================

Abstract base class for remote media-generation services, plus the value
types shared by every service: requests, operation handles and results.

A service only knows how to submit one request and how to read the status
of one operation. Waiting, retrying and memoising belong to the
``OperationPoller``.
"""

import os
import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, Union

import aiofiles
import httpx

from ..core.exceptions import (
    ClipChainError,
    ServiceError,
    SubmissionError,
    QuotaExceededError,
)
from ..core.security import redact_api_key

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 120
DOWNLOAD_CHUNK_SIZE = 1 << 16


# =============================================================================
# Data Classes
# =============================================================================


class ArtifactKind(Enum):
    """What a remote operation produces."""

    IMAGE = "image"
    VIDEO = "video"


class OperationStatus(Enum):
    """Tagged state of a remote operation as seen by the poller."""

    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class GenerationRequest:
    """Request parameters for one image or video generation."""

    # Opaque prompt text, consumed unchanged
    prompt: str
    kind: ArtifactKind = ArtifactKind.VIDEO

    # Image path or URL the generation is conditioned on
    conditioning_image: Optional[str] = None

    duration: int = 8  # seconds, ignored for images
    aspect_ratio: str = "16:9"
    resolution: str = "720p"
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None
    model: Optional[str] = None

    VALID_ASPECT_RATIOS = ("16:9", "9:16", "1:1")
    VALID_RESOLUTIONS = ("720p", "1080p")

    def validate(self) -> None:
        """Raise SubmissionError when the request cannot be submitted."""
        problems: List[str] = []
        if not isinstance(self.prompt, str) or not self.prompt.strip():
            problems.append("prompt is empty")
        if self.kind == ArtifactKind.VIDEO and (not isinstance(self.duration, int) or self.duration <= 0):
            problems.append(f"duration must be a positive integer, got {self.duration!r}")
        if self.aspect_ratio not in self.VALID_ASPECT_RATIOS:
            problems.append(f"unsupported aspect ratio {self.aspect_ratio!r}")
        if self.resolution not in self.VALID_RESOLUTIONS:
            problems.append(f"unsupported resolution {self.resolution!r}")
        if self.seed is not None and (not isinstance(self.seed, int) or self.seed < 0):
            problems.append(f"seed must be a non-negative integer, got {self.seed!r}")
        if self.conditioning_image and not self.conditioning_image.startswith(("http://", "https://")):
            if not Path(self.conditioning_image).is_file():
                problems.append(f"conditioning image not found: {self.conditioning_image}")

        if problems:
            raise SubmissionError(
                f"Malformed generation request: {'; '.join(problems)}",
                details={"problems": problems},
            )

    def with_conditioning_image(self, image: Optional[str]) -> "GenerationRequest":
        """Return a copy conditioned on another image."""
        return replace(self, conditioning_image=image)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "prompt": self.prompt,
            "kind": self.kind.value,
            "conditioning_image": self.conditioning_image,
            "duration": self.duration,
            "aspect_ratio": self.aspect_ratio,
            "resolution": self.resolution,
            "negative_prompt": self.negative_prompt,
            "seed": self.seed,
            "model": self.model,
        }


@dataclass(frozen=True)
class OperationHandle:
    """Opaque reference to a submitted, not-yet-resolved remote operation."""

    id: str
    service: str
    endpoint: str = ""
    kind: ArtifactKind = ArtifactKind.VIDEO
    submitted_at: datetime = field(default_factory=datetime.now, compare=False)

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class RemoteStatus:
    """Normalized answer of a service to a single status check."""

    done: bool
    artifact_url: Optional[str] = None
    artifact_bytes: Optional[bytes] = field(default=None, repr=False)
    mime_type: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class OperationResult:
    """
    Tagged outcome of a remote operation.

    ``DONE`` carries an artifact reference, ``FAILED`` a reason,
    ``TIMED_OUT`` the ``OperationTimeoutError`` produced by ``wait``.
    Terminal results are never mutated.
    """

    status: OperationStatus
    handle: Optional[OperationHandle] = None
    artifact_ref: Optional[str] = None
    artifact_bytes: Optional[bytes] = field(default=None, repr=False)
    mime_type: Optional[str] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[ClipChainError] = field(default=None, compare=False)
    attempts: int = 0

    @classmethod
    def from_remote(cls, handle: OperationHandle, remote: RemoteStatus) -> "OperationResult":
        if not remote.done:
            return cls(status=OperationStatus.PENDING, handle=handle)
        if remote.error_code or remote.error_message:
            return cls(
                status=OperationStatus.FAILED,
                handle=handle,
                reason=remote.error_message or "Unknown error",
                error_code=remote.error_code,
            )
        if not remote.artifact_url and remote.artifact_bytes is None:
            return cls(
                status=OperationStatus.FAILED,
                handle=handle,
                reason="Operation finished without an artifact",
                error_code="NO_ARTIFACT",
            )
        return cls(
            status=OperationStatus.DONE,
            handle=handle,
            artifact_ref=remote.artifact_url or f"inline:{handle.id}",
            artifact_bytes=remote.artifact_bytes,
            mime_type=remote.mime_type,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status != OperationStatus.PENDING

    @property
    def is_done(self) -> bool:
        return self.status == OperationStatus.DONE

    def raise_for_error(self) -> None:
        """Convert a FAILED or TIMED_OUT result into an exception."""
        if self.status == OperationStatus.TIMED_OUT and self.error is not None:
            raise self.error
        if self.status == OperationStatus.FAILED:
            raise ServiceError(
                f"Operation {self.handle} failed: {self.reason}",
                service=self.handle.service if self.handle else None,
                details={"error_code": self.error_code} if self.error_code else None,
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "handle": self.handle.id if self.handle else None,
            "artifact_ref": self.artifact_ref,
            "reason": self.reason,
            "error_code": self.error_code,
            "attempts": self.attempts,
        }


# =============================================================================
# Base Service Class
# =============================================================================


class BaseGenerationService(ABC):
    """
    Abstract base class for generation services.

    Features:
    - Lock-guarded lazy HTTP client
    - HTTP status normalization into the error taxonomy
    - Durable artifact download
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the service.

        Args:
            api_key: API key (or read from environment)
            base_url: Base URL for the API
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.api_key = api_key or self._get_api_key_from_env()
        self.base_url = (base_url or self._get_default_base_url()).rstrip("/")
        self.timeout = timeout
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None
        self._client_lock = asyncio.Lock()

        self._validate_config()

    # -------------------------------------------------------------------------
    # Abstract Methods
    # -------------------------------------------------------------------------

    @property
    @abstractmethod
    def service_name(self) -> str:
        """Return the service name."""

    @property
    @abstractmethod
    def env_key_name(self) -> str:
        """Return the environment variable name for the API key."""

    @abstractmethod
    def _get_default_base_url(self) -> str:
        """Return the default base URL for this service."""

    @abstractmethod
    async def _submit(self, request: GenerationRequest) -> OperationHandle:
        """Send the request and return the remote operation handle."""

    @abstractmethod
    async def _fetch(self, handle: OperationHandle) -> RemoteStatus:
        """Read the status of one operation."""

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def submit(self, request: GenerationRequest) -> OperationHandle:
        """
        Submit a generation request.

        Raises:
            SubmissionError: request rejected or could not be sent
            QuotaExceededError: rate limit or quota hit at submit time
        """
        try:
            handle = await self._submit(request)
        except httpx.TransportError as e:
            raise SubmissionError(
                f"Could not reach {self.service_name}: {redact_api_key(str(e))}",
                service=self.service_name,
                recoverable=True,
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            # Successful status code with a body that is not the documented shape
            raise SubmissionError(
                f"Unreadable submit response from {self.service_name}: {type(e).__name__}: {redact_api_key(str(e))}",
                service=self.service_name,
                recoverable=True,
            )
        logger.info(f"{self.service_name}: submitted {request.kind.value} operation {handle.id}")
        return handle

    async def fetch_operation(self, handle: OperationHandle) -> RemoteStatus:
        """
        Perform a single status check.

        Raises:
            QuotaExceededError: rate limited while polling
            ServiceError: transport or server failure (``recoverable`` set for
                transient conditions)
        """
        try:
            return await self._fetch(handle)
        except httpx.TransportError as e:
            raise ServiceError(
                f"Status check for {handle.id} failed: {redact_api_key(str(e))}",
                service=self.service_name,
                recoverable=True,
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ServiceError(
                f"Unreadable status response for {handle.id}: {type(e).__name__}: {redact_api_key(str(e))}",
                service=self.service_name,
                recoverable=True,
            )

    async def download_artifact(
        self,
        result: OperationResult,
        output_path: Union[str, Path],
    ) -> Path:
        """
        Write the artifact of a DONE result to ``output_path``.

        The file is streamed to ``<name>.part`` and renamed once complete, so
        a file at ``output_path`` is always fully written.
        """
        if not result.is_done:
            raise ServiceError(
                f"Cannot download artifact of a {result.status.value} operation",
                service=self.service_name,
            )

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        part_path = output_path.with_name(output_path.name + ".part")

        try:
            if result.artifact_bytes is not None:
                async with aiofiles.open(part_path, "wb") as f:
                    await f.write(result.artifact_bytes)
            else:
                client = await self._get_client()
                async with client.stream(
                    "GET",
                    result.artifact_ref,
                    headers=self._get_download_headers(),
                    follow_redirects=True,
                ) as response:
                    if response.status_code != 200:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        self._raise_for_status(response.status_code, body, during="download")
                    async with aiofiles.open(part_path, "wb") as f:
                        async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                            await f.write(chunk)
        except httpx.TransportError as e:
            part_path.unlink(missing_ok=True)
            raise ServiceError(
                f"Download failed: {redact_api_key(str(e))}",
                service=self.service_name,
                recoverable=True,
            )
        except ClipChainError:
            part_path.unlink(missing_ok=True)
            raise

        os.replace(part_path, output_path)
        logger.info(f"Artifact downloaded to: {output_path}")
        return output_path

    # -------------------------------------------------------------------------
    # Helper Methods
    # -------------------------------------------------------------------------

    def _raise_for_status(self, status_code: int, body: str, during: str) -> None:
        """Map a non-success HTTP status onto the error taxonomy."""
        if 200 <= status_code < 300:
            return

        body = redact_api_key(body or "")
        message = f"{self.service_name} {during} failed with HTTP {status_code}"

        if status_code == 429 or "RESOURCE_EXHAUSTED" in body:
            raise QuotaExceededError(
                f"{message}: quota or rate limit exceeded",
                service=self.service_name,
                status_code=status_code,
                response_body=body,
            )
        if during == "submit":
            raise SubmissionError(
                message,
                service=self.service_name,
                status_code=status_code,
                response_body=body,
                recoverable=status_code >= 500,
            )
        raise ServiceError(
            message,
            service=self.service_name,
            status_code=status_code,
            response_body=body,
            recoverable=status_code >= 500 or status_code in (408, 409),
        )

    def _get_api_key_from_env(self) -> Optional[str]:
        """Get API key from environment variable."""
        return os.getenv(self.env_key_name)

    def _validate_config(self) -> None:
        """Validate the service configuration."""
        if not self.api_key:
            logger.warning(
                f"No API key found for {self.service_name}. "
                f"Set {self.env_key_name} environment variable or pass api_key parameter."
            )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout),
                    headers=self._get_headers(),
                    transport=self._transport,
                )
            return self._client

    def _get_headers(self) -> Dict[str, str]:
        """Get default headers for requests."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _get_download_headers(self) -> Dict[str, str]:
        """Extra headers for artifact downloads."""
        return {}

    # -------------------------------------------------------------------------
    # Image Utilities
    # -------------------------------------------------------------------------

    @staticmethod
    def encode_image_to_base64(image_path: Union[str, Path]) -> str:
        """Encode an image file to base64."""
        path = Path(image_path)
        if not path.exists():
            raise SubmissionError(f"Image not found: {image_path}")

        with open(path, "rb") as f:
            return base64.b64encode(f.read()).decode("utf-8")

    @staticmethod
    def get_mime_type(image_path: Union[str, Path]) -> str:
        """Get MIME type from file extension."""
        ext = Path(image_path).suffix.lower()
        mime_types = {
            ".jpg": "image/jpeg",
            ".jpeg": "image/jpeg",
            ".png": "image/png",
            ".webp": "image/webp",
        }
        return mime_types.get(ext, "image/jpeg")

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close the HTTP client."""
        async with self._client_lock:
            if self._client:
                await self._client.aclose()
                self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
