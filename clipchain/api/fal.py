"""
fal.ai Service
==============

Queue-based access to the image and video models hosted on fal.ai.

Submissions go to ``queue.fal.run/{endpoint}``; status and results are read
from ``queue.fal.run/{app}/requests/{request_id}``.
"""

import logging
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


@register_service("fal")
class FalGenerationService(BaseGenerationService):
    """
    fal.ai queue service.

    Model names map to endpoints; video models switch to their
    image-to-video variant when the request carries a conditioning image.
    """

    MODEL_ENDPOINTS = {
        # Video
        "veo-3": "fal-ai/veo3",
        "veo-3-fast": "fal-ai/veo3/fast",
        "veo-3-i2v": "fal-ai/veo3/image-to-video",
        "veo-3-fast-i2v": "fal-ai/veo3/fast/image-to-video",
        "kling-2.5": "fal-ai/kling-video/v2.5/standard/text-to-video",
        "kling-2.5-i2v": "fal-ai/kling-video/v2.5/standard/image-to-video",
        # Image
        "flux-pro": "fal-ai/flux-pro/v1.1",
        "imagen-4": "fal-ai/imagen4/preview",
    }

    DEFAULT_VIDEO_MODEL = "veo-3-fast"
    DEFAULT_IMAGE_MODEL = "imagen-4"

    TERMINAL_STATES = {"COMPLETED"}

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

    @property
    def service_name(self) -> str:
        return "fal"

    @property
    def env_key_name(self) -> str:
        return "FAL_API_KEY"

    def _get_default_base_url(self) -> str:
        return "https://queue.fal.run"

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def _get_endpoint(self, request: GenerationRequest) -> str:
        """Resolve the endpoint for a request's model."""
        default = self.image_model if request.kind == ArtifactKind.IMAGE else self.video_model
        model = request.model or default

        if request.kind == ArtifactKind.VIDEO and request.conditioning_image:
            i2v_model = f"{model.replace('-i2v', '')}-i2v"
            if i2v_model in self.MODEL_ENDPOINTS:
                return self.MODEL_ENDPOINTS[i2v_model]

        # Unknown names are treated as raw endpoint paths
        return self.MODEL_ENDPOINTS.get(model, model)

    def _build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        """Build the API request payload."""
        payload: Dict[str, Any] = {
            "prompt": request.prompt,
            "aspect_ratio": request.aspect_ratio,
        }

        if request.kind == ArtifactKind.VIDEO:
            payload["duration"] = f"{request.duration}s"
            payload["resolution"] = request.resolution
            if request.conditioning_image:
                payload["image_url"] = self._image_reference(request.conditioning_image)
        else:
            payload["num_images"] = 1

        if request.negative_prompt:
            payload["negative_prompt"] = request.negative_prompt
        if request.seed is not None:
            payload["seed"] = request.seed

        return payload

    def _image_reference(self, image: str) -> str:
        """fal accepts URLs or data URIs for input images."""
        if image.startswith(("http://", "https://")):
            return image
        return f"data:{self.get_mime_type(image)};base64,{self.encode_image_to_base64(image)}"

    async def _submit(self, request: GenerationRequest) -> OperationHandle:
        endpoint = self._get_endpoint(request)
        client = await self._get_client()

        logger.debug(f"fal request to {endpoint}")
        response = await client.post(f"{self.base_url}/{endpoint}", json=self._build_payload(request))
        self._raise_for_status(response.status_code, response.text, during="submit")

        data = response.json()
        request_id = data.get("request_id")
        if not request_id:
            self._raise_for_status(400, f"No request_id in response: {data}", during="submit")

        return OperationHandle(
            id=request_id,
            service=self.service_name,
            endpoint=endpoint,
            kind=request.kind,
        )

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @staticmethod
    def _app_path(endpoint: str) -> str:
        """Status URLs live under the first two path segments of the endpoint."""
        return "/".join(endpoint.split("/")[:2])

    async def _fetch(self, handle: OperationHandle) -> RemoteStatus:
        client = await self._get_client()
        base = f"{self.base_url}/{self._app_path(handle.endpoint)}/requests/{handle.id}"

        response = await client.get(f"{base}/status")
        self._raise_for_status(response.status_code, response.text, during="poll")
        status = (response.json().get("status") or "").upper()

        if status not in self.TERMINAL_STATES:
            return RemoteStatus(done=False)

        response = await client.get(base)
        if 400 <= response.status_code < 500 and response.status_code != 429:
            # The queue reports model-side failures on the result endpoint
            return RemoteStatus(
                done=True,
                error_code=str(response.status_code),
                error_message=self._extract_error(response),
            )
        self._raise_for_status(response.status_code, response.text, during="poll")
        return self._parse_result(handle, response.json())

    @staticmethod
    def _extract_error(response) -> str:
        try:
            detail = response.json().get("detail")
        except ValueError:
            return response.text[:500]
        if isinstance(detail, list) and detail:
            return "; ".join(str(item.get("msg", item)) for item in detail if item)
        return str(detail or response.text[:500])

    def _parse_result(self, handle: OperationHandle, data: Dict[str, Any]) -> RemoteStatus:
        """Parse a completed queue result."""
        if handle.kind == ArtifactKind.VIDEO:
            video = data.get("video") or {}
            if video.get("url"):
                return RemoteStatus(done=True, artifact_url=video["url"], mime_type=video.get("content_type", "video/mp4"))
        else:
            images = data.get("images") or []
            if images and images[0].get("url"):
                return RemoteStatus(
                    done=True,
                    artifact_url=images[0]["url"],
                    mime_type=images[0].get("content_type", "image/png"),
                )

        return RemoteStatus(done=True, error_code="NO_ARTIFACT", error_message="No artifact in fal result")
