"""
API Integration Layer
=====================

Unified access to remote media-generation services.

Supported Services:
- google: Gemini API (Veo video operations, Imagen images)
- fal: fal.ai queue (Veo, Kling, Flux, Imagen endpoints)

Usage:
    from clipchain.api import get_service, GenerationRequest

    service = get_service("google")
    handle = await service.submit(GenerationRequest(prompt="A lighthouse at dusk"))
"""

from .base import (
    ArtifactKind,
    BaseGenerationService,
    GenerationRequest,
    OperationHandle,
    OperationResult,
    OperationStatus,
    RemoteStatus,
)
from .factory import get_service, list_services, register_service

__all__ = [
    "ArtifactKind",
    "BaseGenerationService",
    "GenerationRequest",
    "OperationHandle",
    "OperationResult",
    "OperationStatus",
    "RemoteStatus",
    "get_service",
    "list_services",
    "register_service",
]
