"""
clipchain
=========

Generate short AI video clips by chaining long-running remote generation
calls, then assemble the fixed-length segments into one continuous video.

Features:
- Google (Veo / Imagen) and fal.ai services behind one operation contract
- Bounded, idempotent polling of remote operations
- Last-frame continuity between consecutive segments
- Crossfaded stitching, always re-encoded to a widely playable H.264 profile
- Per-job manifest with cost ledger and stage timings

Quick Start:
    from clipchain import JobRequest, PipelineOrchestrator

    async with PipelineOrchestrator.from_config() as orchestrator:
        result = await orchestrator.run(JobRequest(
            job_id="lighthouse",
            image_prompt="A lighthouse on a cliff at dusk",
            segment_prompts=[
                "Waves crash against the rocks",
                "The beam sweeps across the sea",
                "Night falls over the coast",
            ],
        ))
        print(result.outcome, result.output_path)
"""

__version__ = "0.3.0"
__author__ = "clipchain"

from .core.config import Config, get_config, set_config
from .core.exceptions import (
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
from .api import (
    GenerationRequest,
    OperationHandle,
    OperationResult,
    OperationStatus,
    get_service,
    list_services,
)
from .workflow import (
    COMPATIBILITY_BASELINE,
    ContinuityManager,
    EncodingProfile,
    FailurePolicy,
    JobOutcome,
    JobRequest,
    JobResult,
    JobStage,
    OperationPoller,
    PipelineOrchestrator,
    StitchingEngine,
    TransitionSpec,
    TransitionType,
)

__all__ = [
    "__version__",
    # Core
    "Config",
    "get_config",
    "set_config",
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
    # Services
    "GenerationRequest",
    "OperationHandle",
    "OperationResult",
    "OperationStatus",
    "get_service",
    "list_services",
    # Pipeline
    "COMPATIBILITY_BASELINE",
    "ContinuityManager",
    "EncodingProfile",
    "FailurePolicy",
    "JobOutcome",
    "JobRequest",
    "JobResult",
    "JobStage",
    "OperationPoller",
    "PipelineOrchestrator",
    "StitchingEngine",
    "TransitionSpec",
    "TransitionType",
]
