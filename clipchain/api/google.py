"""
Google Gemini API Service
=========================

Veo video generation (long-running operations) and Imagen image generation
through the Gemini API.

Features:
- Image-to-video conditioning for continuity chaining
- Duration, resolution, negative prompt and seed control
- Imagen results surfaced as already-finished operations so the poller
  treats images and videos the same way
"""

import base64
import logging
import uuid
from typing import Optional, Dict, Any

from .base import (
    ArtifactKind,
    BaseGenerationService,
    GenerationRequest,
    OperationHandle,
    RemoteStatus,
)
from .factory import register_service

logger = logging.getLogger(__name__)


DEFAULT_VIDEO_MODEL = "veo-3.0-fast-generate-001"
DEFAULT_IMAGE_MODEL = "imagen-4.0-generate-001"


@register_service("google")
class GoogleGenerationService(BaseGenerationService):
    """
    Gemini API generation service.

    Veo operations are polled through ``GET /{operation name}``; Imagen's
    ``predict`` call answers synchronously and is cached until fetched.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        video_model: str = DEFAULT_VIDEO_MODEL,
        image_model: str = DEFAULT_IMAGE_MODEL,
        **kwargs,
    ):
        super().__init__(api_key=api_key, **kwargs)
        self.video_model = video_model
        self.image_model = image_model
        self._finished_images: Dict[str, RemoteStatus] = {}

    @property
    def service_name(self) -> str:
        return "google"

    @property
    def env_key_name(self) -> str:
        return "GOOGLE_API_KEY"

    def _get_default_base_url(self) -> str:
        return "https://generativelanguage.googleapis.com/v1beta"

    def _get_headers(self) -> Dict[str, str]:
        """Gemini API authenticates with the x-goog-api-key header."""
        return {
            "x-goog-api-key": self.api_key or "",
            "Content-Type": "application/json",
        }

    def _get_download_headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key or ""}

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def _submit(self, request: GenerationRequest) -> OperationHandle:
        if request.kind == ArtifactKind.IMAGE:
            return await self._submit_image(request)
        return await self._submit_video(request)

    async def _submit_video(self, request: GenerationRequest) -> OperationHandle:
        model = request.model or self.video_model
        endpoint = f"models/{model}:predictLongRunning"
        payload = self._build_video_payload(request)

        logger.debug(f"Veo request for {model}: {request.duration}s {request.aspect_ratio} {request.resolution}")

        client = await self._get_client()
        response = await client.post(f"{self.base_url}/{endpoint}", json=payload)
        self._raise_for_status(response.status_code, response.text, during="submit")

        data = response.json()
        name = data.get("name")
        if not name:
            self._raise_for_status(400, f"No operation name in response: {data}", during="submit")

        return OperationHandle(
            id=name,
            service=self.service_name,
            endpoint=model,
            kind=ArtifactKind.VIDEO,
        )

    async def _submit_image(self, request: GenerationRequest) -> OperationHandle:
        model = request.model or self.image_model
        payload: Dict[str, Any] = {
            "instances": [{"prompt": request.prompt}],
            "parameters": {
                "sampleCount": 1,
                "aspectRatio": request.aspect_ratio,
            },
        }
        if request.negative_prompt:
            payload["instances"][0]["negativePrompt"] = request.negative_prompt
        if request.seed is not None:
            payload["parameters"]["seed"] = request.seed
        if request.conditioning_image:
            logger.debug("Imagen ignores conditioning images, generating from prompt only")

        client = await self._get_client()
        response = await client.post(f"{self.base_url}/models/{model}:predict", json=payload)
        self._raise_for_status(response.status_code, response.text, during="submit")

        handle = OperationHandle(
            id=f"images/{uuid.uuid4().hex}",
            service=self.service_name,
            endpoint=model,
            kind=ArtifactKind.IMAGE,
        )
        self._finished_images[handle.id] = self._parse_image_response(response.json())
        return handle

    def _build_video_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        """Build the Veo request payload."""
        instance: Dict[str, Any] = {"prompt": request.prompt}

        if request.conditioning_image:
            if request.conditioning_image.startswith(("http://", "https://")):
                instance["image"] = {"uri": request.conditioning_image}
            else:
                instance["image"] = {
                    "bytesBase64Encoded": self.encode_image_to_base64(request.conditioning_image),
                    "mimeType": self.get_mime_type(request.conditioning_image),
                }

        parameters: Dict[str, Any] = {
            "aspectRatio": request.aspect_ratio,
            "resolution": request.resolution,
            "durationSeconds": request.duration,
        }
        if request.negative_prompt:
            parameters["negativePrompt"] = request.negative_prompt
        if request.seed is not None:
            parameters["seed"] = request.seed

        return {"instances": [instance], "parameters": parameters}

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def _fetch(self, handle: OperationHandle) -> RemoteStatus:
        if handle.kind == ArtifactKind.IMAGE:
            status = self._finished_images.pop(handle.id, None)
            if status is None:
                return RemoteStatus(
                    done=True,
                    error_code="UNKNOWN_OPERATION",
                    error_message=f"Unknown image operation {handle.id}",
                )
            return status

        client = await self._get_client()
        response = await client.get(f"{self.base_url}/{handle.id}")
        self._raise_for_status(response.status_code, response.text, during="poll")
        return self._parse_operation(response.json())

    def _parse_operation(self, data: Dict[str, Any]) -> RemoteStatus:
        """Parse a Veo long-running operation."""
        if not data.get("done"):
            return RemoteStatus(done=False)

        error = data.get("error")
        if error:
            return RemoteStatus(
                done=True,
                error_code=str(error.get("status") or error.get("code") or "ERROR"),
                error_message=error.get("message", "Unknown error"),
            )

        video_response = (data.get("response") or {}).get("generateVideoResponse") or {}
        samples = video_response.get("generatedSamples") or []
        if not samples:
            reasons = video_response.get("raiMediaFilteredReasons") or ["No video in response"]
            return RemoteStatus(
                done=True,
                error_code="FILTERED" if video_response.get("raiMediaFilteredReasons") else "NO_ARTIFACT",
                error_message="; ".join(reasons),
            )

        video = samples[0].get("video") or {}
        if video.get("uri"):
            return RemoteStatus(done=True, artifact_url=video["uri"], mime_type="video/mp4")
        if video.get("bytesBase64Encoded"):
            return RemoteStatus(
                done=True,
                artifact_bytes=base64.b64decode(video["bytesBase64Encoded"]),
                mime_type="video/mp4",
            )
        return RemoteStatus(done=True, error_code="NO_ARTIFACT", error_message="Sample has no video data")

    def _parse_image_response(self, data: Dict[str, Any]) -> RemoteStatus:
        """Parse an Imagen predict response."""
        predictions = data.get("predictions") or []
        for prediction in predictions:
            if prediction.get("bytesBase64Encoded"):
                return RemoteStatus(
                    done=True,
                    artifact_bytes=base64.b64decode(prediction["bytesBase64Encoded"]),
                    mime_type=prediction.get("mimeType", "image/png"),
                )
        return RemoteStatus(
            done=True,
            error_code="FILTERED",
            error_message="No image returned (prompt may have been filtered)",
        )
