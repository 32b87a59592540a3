"""
Jobs
====

Job-scoped state: segments, the append-only chain, the cost ledger and the
manifest persisted next to the artifacts. ``JobStore`` is the explicit
registry of running jobs; nothing else keeps per-job state.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterator, Set, Union

from ..api.base import GenerationRequest
from ..core.exceptions import ValidationError
from ..core.security import sanitize_filename
from ..utils.storage import JobLayout, save_metadata, load_metadata

logger = logging.getLogger(__name__)


class SegmentStatus(Enum):
    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"


class JobStage(Enum):
    """Stages of the orchestrator state machine, in order."""

    CREATED = "created"
    IMAGE_GENERATING = "image_generating"
    IMAGE_READY = "image_ready"
    SEGMENTS_GENERATING = "segments_generating"
    SEGMENTS_READY = "segments_ready"
    STITCHING = "stitching"
    ENHANCING = "enhancing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStage.COMPLETE, JobStage.FAILED, JobStage.CANCELLED)


class FailurePolicy(Enum):
    ABORT_ON_FIRST_FAILURE = "abort-on-first-failure"
    BEST_EFFORT = "best-effort"


class JobOutcome(Enum):
    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_SKIPS = "succeeded_with_skips"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# Segments and Chain
# =============================================================================


@dataclass
class Segment:
    """One fixed-length generated clip."""

    index: int
    request: GenerationRequest
    scenario: str = ""
    status: SegmentStatus = SegmentStatus.PENDING
    artifact_path: Optional[str] = None
    duration: float = 0.0
    has_audio: bool = True
    last_frame_path: Optional[str] = None
    # Index of the segment whose last frame seeded this one, None for the reference image
    conditioned_on: Optional[int] = None
    operation_id: Optional[str] = None
    error: Optional[str] = None
    cost: float = 0.0

    @property
    def is_ready(self) -> bool:
        return self.status == SegmentStatus.READY

    def mark_ready(self, artifact_path: Union[str, Path], duration: float, has_audio: bool = True) -> None:
        self.artifact_path = str(artifact_path)
        self.duration = duration
        self.has_audio = has_audio
        self.status = SegmentStatus.READY
        self.error = None

    def mark_failed(self, reason: str) -> None:
        self.status = SegmentStatus.FAILED
        self.error = reason
        # A failed segment never seeds another one
        self.last_frame_path = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "scenario": self.scenario,
            "status": self.status.value,
            "artifact_path": self.artifact_path,
            "duration": self.duration,
            "has_audio": self.has_audio,
            "last_frame_path": self.last_frame_path,
            "conditioned_on": self.conditioned_on,
            "operation_id": self.operation_id,
            "error": self.error,
            "cost": round(self.cost, 4),
            "request": self.request.to_dict(),
        }


@dataclass
class Chain:
    """Ordered, append-only list of segments."""

    segments: List[Segment] = field(default_factory=list)
    # Set when chaining stopped before every request was rendered
    stopped_reason: Optional[str] = None

    def append(self, segment: Segment) -> None:
        if self.segments and segment.index <= self.segments[-1].index:
            raise ValidationError(
                f"Segment index {segment.index} does not follow {self.segments[-1].index}",
                field="index",
                value=segment.index,
                constraint="strictly increasing",
            )
        if segment.index < 0:
            raise ValidationError("Segment index must be >= 0", field="index", value=segment.index)
        self.segments.append(segment)

    def __iter__(self) -> Iterator[Segment]:
        return iter(self.segments)

    def __len__(self) -> int:
        return len(self.segments)

    def __getitem__(self, position: int) -> Segment:
        return self.segments[position]

    @property
    def ready(self) -> List[Segment]:
        return [s for s in self.segments if s.status == SegmentStatus.READY]

    @property
    def failed(self) -> List[Segment]:
        return [s for s in self.segments if s.status == SegmentStatus.FAILED]

    @property
    def total_duration(self) -> float:
        """Sum of the durations of READY segments, before transitions."""
        return sum(s.duration for s in self.ready)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "segments": [s.to_dict() for s in self.segments],
            "total_duration": round(self.total_duration, 3),
            "stopped_reason": self.stopped_reason,
        }


# =============================================================================
# Manifest
# =============================================================================


@dataclass
class CostLineItem:
    """One billed external call."""

    stage: str
    description: str
    amount: float
    segment_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "description": self.description,
            "amount": round(self.amount, 4),
            "segment_index": self.segment_index,
        }


@dataclass
class JobManifest:
    """Everything known about a job, persisted as ``manifest.json``."""

    job_id: str
    policy: FailurePolicy = FailurePolicy.ABORT_ON_FIRST_FAILURE
    stage: JobStage = JobStage.CREATED
    chain: Chain = field(default_factory=Chain)
    transition: Optional[Dict[str, Any]] = None
    profile: Optional[Dict[str, Any]] = None
    reference_image: Optional[str] = None
    stitched_path: Optional[str] = None
    output_path: Optional[str] = None
    achieved_duration: Optional[float] = None
    included_segments: List[int] = field(default_factory=list)
    skipped_segments: List[Dict[str, Any]] = field(default_factory=list)
    discontinuities: List[Dict[str, Any]] = field(default_factory=list)
    cost_items: List[CostLineItem] = field(default_factory=list)
    stage_timings: Dict[str, float] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    outcome: Optional[JobOutcome] = None
    failed_stage: Optional[JobStage] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def total_cost(self) -> float:
        return sum(item.amount for item in self.cost_items)

    @property
    def wall_clock(self) -> float:
        return sum(self.stage_timings.values())

    def add_cost(
        self,
        stage: JobStage,
        description: str,
        amount: float,
        segment_index: Optional[int] = None,
    ) -> CostLineItem:
        item = CostLineItem(stage.value, description, amount, segment_index)
        self.cost_items.append(item)
        return item

    def record_stage_time(self, stage: JobStage, seconds: float) -> None:
        self.stage_timings[stage.value] = self.stage_timings.get(stage.value, 0.0) + seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "policy": self.policy.value,
            "stage": self.stage.value,
            "outcome": self.outcome.value if self.outcome else None,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": self.error,
            "reference_image": self.reference_image,
            "stitched_path": self.stitched_path,
            "output_path": self.output_path,
            "achieved_duration": self.achieved_duration,
            "transition": self.transition,
            "profile": self.profile,
            "chain": self.chain.to_dict(),
            "included_segments": self.included_segments,
            "skipped_segments": self.skipped_segments,
            "discontinuities": self.discontinuities,
            "costs": {
                "items": [item.to_dict() for item in self.cost_items],
                "total": round(self.total_cost, 4),
            },
            "stage_timings": {k: round(v, 3) for k, v in self.stage_timings.items()},
            "wall_clock": round(self.wall_clock, 3),
            "warnings": self.warnings,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# =============================================================================
# Job Store
# =============================================================================


class JobStore:
    """
    Registry of jobs and their on-disk layout.

    Usage:
        store = JobStore("./output")
        manifest = store.create("job-1")
        manifest.stage = JobStage.STITCHING
        store.update(manifest)
    """

    def __init__(
        self,
        base_path: Union[str, Path] = "./output",
        manifest_name: str = "manifest.json",
        frame_format: str = "jpg",
    ):
        self.base_path = Path(base_path)
        self.manifest_name = manifest_name
        self.frame_format = frame_format
        self._manifests: Dict[str, JobManifest] = {}
        self._cancelled: Set[str] = set()

    def layout(self, job_id: str) -> JobLayout:
        return JobLayout(self.base_path, job_id, self.manifest_name, self.frame_format)

    @staticmethod
    def _key(job_id: str) -> str:
        # Jobs are identified by their directory name
        return sanitize_filename(job_id)

    def create(
        self,
        job_id: str,
        policy: FailurePolicy = FailurePolicy.ABORT_ON_FIRST_FAILURE,
    ) -> JobManifest:
        """
        Register a new job and write its first manifest.

        Raises:
            ValidationError: the job is already running, or another job id
                maps to the same directory
        """
        key = self._key(job_id)
        existing = self._manifests.get(key)
        if existing is not None and existing.job_id != job_id:
            raise ValidationError(
                f"Job id {job_id!r} collides with job {existing.job_id!r} in directory {key}",
                field="job_id",
                value=job_id,
            )
        if existing is not None and not existing.stage.is_terminal:
            raise ValidationError(f"Job {job_id} is already running", field="job_id", value=job_id)

        layout = self.layout(job_id)
        persisted = load_metadata(layout.manifest)
        if persisted is not None and persisted.get("job_id") != job_id:
            raise ValidationError(
                f"Job id {job_id!r} collides with job {persisted.get('job_id')!r} in directory {key}",
                field="job_id",
                value=job_id,
            )

        layout.ensure()
        manifest = JobManifest(job_id=job_id, policy=policy)
        self._manifests[key] = manifest
        self.update(manifest)
        logger.info(f"Created job {job_id}")
        return manifest

    def get(self, job_id: str) -> Optional[JobManifest]:
        manifest = self._manifests.get(self._key(job_id))
        if manifest is None or manifest.job_id != job_id:
            return None
        return manifest

    def update(self, manifest: JobManifest) -> str:
        """Persist the manifest after a state change."""
        manifest.updated_at = datetime.now()
        return save_metadata(manifest.to_dict(), self.layout(manifest.job_id).manifest)

    def finalize(self, manifest: JobManifest) -> str:
        """Persist the final manifest, whatever the outcome."""
        manifest.finished_at = datetime.now()
        self._cancelled.discard(self._key(manifest.job_id))
        return self.update(manifest)

    def mark_cancelled(self, job_id: str) -> bool:
        """
        Request cancellation of a running job.

        Returns:
            False if the job is unknown or already finished
        """
        manifest = self.get(job_id)
        if manifest is None or manifest.stage.is_terminal:
            return False
        self._cancelled.add(self._key(job_id))
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def is_cancelled(self, job_id: str) -> bool:
        return self._key(job_id) in self._cancelled

    def load(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Read a persisted manifest from disk."""
        return load_metadata(self.layout(job_id).manifest)
