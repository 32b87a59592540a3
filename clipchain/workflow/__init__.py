"""
Workflow Orchestration
======================

Generation-and-assembly pipeline.

Components:
- OperationPoller: submit / poll / wait over remote operations
- ContinuityManager: last-frame extraction and frame-conditioned chaining
- StitchingEngine: transitions and baseline re-encoding
- PipelineOrchestrator: per-job state machine, failure policy and cost ledger
"""

from .continuity import ContinuityManager, FrameImage
from .enhancer import Enhancer, EnhancementResult, FfmpegUpscaleEnhancer
from .jobs import (
    Chain,
    CostLineItem,
    FailurePolicy,
    JobManifest,
    JobOutcome,
    JobStage,
    JobStore,
    Segment,
    SegmentStatus,
)
from .orchestrator import JobRequest, JobResult, PipelineOrchestrator
from .poller import OperationPoller
from .stitcher import (
    COMPATIBILITY_BASELINE,
    EncodingInput,
    EncodingInvocation,
    EncodingProfile,
    EncodingTool,
    FfmpegEncodingTool,
    StitchingEngine,
    StitchResult,
    TransitionSpec,
    TransitionType,
)
from .throttle import AdaptiveThrottle

__all__ = [
    "ContinuityManager",
    "FrameImage",
    "Enhancer",
    "EnhancementResult",
    "FfmpegUpscaleEnhancer",
    "Chain",
    "CostLineItem",
    "FailurePolicy",
    "JobManifest",
    "JobOutcome",
    "JobStage",
    "JobStore",
    "Segment",
    "SegmentStatus",
    "JobRequest",
    "JobResult",
    "PipelineOrchestrator",
    "OperationPoller",
    "COMPATIBILITY_BASELINE",
    "EncodingInput",
    "EncodingInvocation",
    "EncodingProfile",
    "EncodingTool",
    "FfmpegEncodingTool",
    "StitchingEngine",
    "StitchResult",
    "TransitionSpec",
    "TransitionType",
    "AdaptiveThrottle",
]
