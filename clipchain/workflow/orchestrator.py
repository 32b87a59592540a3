"""
Pipeline Orchestrator
=====================

Runs one job end to end::

    CREATED -> IMAGE_GENERATING -> IMAGE_READY -> SEGMENTS_GENERATING
            -> SEGMENTS_READY -> STITCHING -> [ENHANCING] -> COMPLETE

with FAILED reachable from every stage and CANCELLED observed between
stages and segments. The manifest is written on every stage transition
and once more at the end, whatever the outcome.

Every job is a sequential coroutine; many jobs can share one event loop and
one orchestrator. The only state shared between jobs is the submission
throttle and the job store.
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple

from ..api.base import (
    ArtifactKind,
    BaseGenerationService,
    GenerationRequest,
    OperationHandle,
    OperationResult,
)
from ..api.factory import get_service
from ..core.config import Config, get_config
from ..core.exceptions import (
    ClipChainError,
    JobCancelledError,
    MissingArtifactError,
    QuotaExceededError,
    ValidationError,
)
from ..utils.image_utils import extension_for_mime, get_image_dimensions
from ..utils.media import MediaProbe
from ..utils.storage import JobLayout
from .continuity import ContinuityManager
from .enhancer import Enhancer, FfmpegUpscaleEnhancer
from .jobs import (
    FailurePolicy,
    JobManifest,
    JobOutcome,
    JobStage,
    JobStore,
    Segment,
    SegmentStatus,
)
from .poller import OperationPoller
from .stitcher import (
    EncodingProfile,
    EncodingTool,
    FfmpegEncodingTool,
    StitchingEngine,
    TransitionSpec,
)
from .throttle import AdaptiveThrottle

logger = logging.getLogger(__name__)


# =============================================================================
# Job Request / Result
# =============================================================================


@dataclass
class JobRequest:
    """
    One generation-and-assembly job.

    Unset fields fall back to the orchestrator's configuration.
    """

    job_id: str
    segment_prompts: List[str]
    image_prompt: Optional[str] = None
    # Caller-supplied reference image; skips the image generation call
    reference_image: Optional[str] = None
    scenarios: Optional[List[str]] = None
    segment_duration: Optional[int] = None
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None
    transition: Optional[TransitionSpec] = None
    policy: Optional[FailurePolicy] = None
    enhance: Optional[bool] = None
    profile: Optional[EncodingProfile] = None

    def validate(self) -> None:
        if not self.job_id or not str(self.job_id).strip():
            raise ValidationError("job_id is required", field="job_id")
        if not self.segment_prompts:
            raise ValidationError("At least one segment prompt is required", field="segment_prompts")
        if not self.image_prompt and not self.reference_image:
            raise ValidationError(
                "Either image_prompt or reference_image is required",
                field="image_prompt",
            )
        if self.segment_duration is not None and (
            isinstance(self.segment_duration, bool)
            or not isinstance(self.segment_duration, int)
            or self.segment_duration <= 0
        ):
            raise ValidationError(
                f"duration must be a positive whole number of seconds, got {self.segment_duration!r}",
                field="duration",
                value=self.segment_duration,
            )
        if self.seed is not None and (isinstance(self.seed, bool) or not isinstance(self.seed, int)):
            raise ValidationError(f"seed must be an integer, got {self.seed!r}", field="seed", value=self.seed)
        if self.scenarios is not None and len(self.scenarios) != len(self.segment_prompts):
            raise ValidationError(
                f"Got {len(self.scenarios)} scenarios for {len(self.segment_prompts)} segments",
                field="scenarios",
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobRequest":
        """
        Build a request from a parsed job file.

        ``segments`` entries are either prompt strings or mappings with
        ``prompt`` and optional ``scenario``.
        """
        prompts: List[str] = []
        scenarios: List[str] = []
        for entry in data.get("segments") or []:
            if isinstance(entry, dict):
                prompts.append(entry.get("prompt", ""))
                scenarios.append(entry.get("scenario", ""))
            else:
                prompts.append(str(entry))
                scenarios.append("")

        transition = None
        spec = data.get("transition")
        if isinstance(spec, str):
            # Shorthand: `transition: fade`
            spec = {"type": spec}
        if spec:
            if not isinstance(spec, dict):
                raise ValidationError(
                    "transition must be a type name or a mapping with type and duration",
                    field="transition",
                    value=spec,
                )
            try:
                duration = float(spec.get("duration", 0.5))
            except (TypeError, ValueError):
                raise ValidationError(
                    f"Invalid transition duration: {spec.get('duration')!r}",
                    field="transition.duration",
                    value=spec.get("duration"),
                )
            transition = TransitionSpec.from_config(str(spec.get("type", "fade")), duration)

        policy = None
        if data.get("policy"):
            try:
                policy = FailurePolicy(data["policy"])
            except ValueError:
                raise ValidationError(f"Unknown failure policy: {data['policy']}", field="policy")

        profile = None
        if data.get("encoding"):
            try:
                profile = EncodingProfile(**data["encoding"])
            except TypeError as e:
                raise ValidationError(f"Invalid encoding settings: {e}", field="encoding")

        job = cls(
            job_id=str(data.get("job_id", "")),
            segment_prompts=prompts,
            image_prompt=data.get("image_prompt"),
            reference_image=data.get("reference_image"),
            scenarios=scenarios if any(scenarios) else None,
            segment_duration=data.get("duration"),
            aspect_ratio=data.get("aspect_ratio"),
            resolution=data.get("resolution"),
            negative_prompt=data.get("negative_prompt"),
            seed=data.get("seed"),
            transition=transition,
            policy=policy,
            enhance=data.get("enhance"),
            profile=profile,
        )
        job.validate()
        return job


@dataclass
class JobResult:
    """Final outcome of a job."""

    job_id: str
    outcome: JobOutcome
    failed_stage: Optional[JobStage] = None
    error: Optional[str] = None
    output_path: Optional[str] = None
    achieved_duration: Optional[float] = None
    segment_outcomes: List[Dict[str, Any]] = field(default_factory=list)
    included_segments: List[int] = field(default_factory=list)
    skipped_segments: List[Dict[str, Any]] = field(default_factory=list)
    discontinuities: List[Dict[str, Any]] = field(default_factory=list)
    total_cost: float = 0.0
    wall_clock: float = 0.0
    manifest_path: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.outcome in (JobOutcome.SUCCEEDED, JobOutcome.SUCCEEDED_WITH_SKIPS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "outcome": self.outcome.value,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": self.error,
            "output_path": self.output_path,
            "achieved_duration": self.achieved_duration,
            "segment_outcomes": self.segment_outcomes,
            "included_segments": self.included_segments,
            "skipped_segments": self.skipped_segments,
            "discontinuities": self.discontinuities,
            "total_cost": round(self.total_cost, 4),
            "wall_clock": round(self.wall_clock, 3),
            "manifest_path": self.manifest_path,
            "warnings": self.warnings,
        }


# =============================================================================
# Orchestrator
# =============================================================================


class PipelineOrchestrator:
    """
    Drives jobs through image generation, chained segment generation,
    stitching and the optional enhancement pass.
    """

    def __init__(
        self,
        config: Config,
        image_service: BaseGenerationService,
        video_service: BaseGenerationService,
        probe: MediaProbe,
        encoding_tool: EncodingTool,
        enhancer: Optional[Enhancer] = None,
        store: Optional[JobStore] = None,
        throttle: Optional[AdaptiveThrottle] = None,
        sleep=None,
        clock=None,
    ):
        self.config = config
        self.image_service = image_service
        self.video_service = video_service

        polling = config.polling
        self.image_poller = OperationPoller(
            image_service, polling.poll_retries, polling.poll_retry_delay, sleep=sleep, clock=clock
        )
        self.video_poller = OperationPoller(
            video_service, polling.poll_retries, polling.poll_retry_delay, sleep=sleep, clock=clock
        )
        self.continuity = ContinuityManager(
            probe,
            epsilon=config.chaining.frame_epsilon,
            frame_format=config.chaining.frame_format,
            quality=config.chaining.frame_quality,
        )
        self.stitcher = StitchingEngine(encoding_tool, probe)
        self.enhancer = enhancer
        self.store = store or JobStore(
            config.output.base_path,
            manifest_name=config.output.manifest_name,
            frame_format=config.chaining.frame_format,
        )
        self.throttle = throttle or AdaptiveThrottle(
            max_concurrent=config.performance.max_concurrent_submissions,
            min_concurrent=config.performance.min_concurrent_submissions,
            recovery_successes=config.performance.recovery_successes,
        )

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "PipelineOrchestrator":
        """Build an orchestrator with real services and ffmpeg tooling."""
        config = config or get_config()
        services = config.services

        def build(name: str) -> BaseGenerationService:
            settings = dict(config.get_service_config(name))
            api_key = settings.pop("api_key", None)
            if services.video_model:
                settings["video_model"] = services.video_model
            if services.image_model:
                settings["image_model"] = services.image_model
            return get_service(name, api_key=api_key, timeout=services.request_timeout, **settings)

        image_service = build(services.image_service)
        if services.video_service == services.image_service:
            video_service = image_service
        else:
            video_service = build(services.video_service)

        stitching = config.stitching
        probe = MediaProbe(stitching.ffprobe_path, stitching.ffmpeg_path)
        tool = FfmpegEncodingTool(stitching.ffmpeg_path, timeout=stitching.tool_timeout)
        enhancer = FfmpegUpscaleEnhancer(
            tool,
            probe,
            target_height=config.enhancement.target_height,
            price_per_minute=config.costs.enhancement_per_minute,
            profile=EncodingProfile(crf=stitching.crf, preset=stitching.preset),
        )
        return cls(config, image_service, video_service, probe, tool, enhancer=enhancer)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def run(self, job: JobRequest) -> JobResult:
        """
        Run a job to a terminal state.

        Raises:
            ValidationError: the job request is malformed or already running
        """
        job.validate()

        config = self.config
        policy = job.policy or FailurePolicy(config.chaining.failure_policy)
        transition = job.transition or TransitionSpec.from_config(
            config.stitching.transition_type, config.stitching.transition_duration
        )
        profile = job.profile or EncodingProfile(crf=config.stitching.crf, preset=config.stitching.preset)
        enhance = config.enhancement.enabled if job.enhance is None else job.enhance
        if enhance and self.enhancer is None:
            raise ValidationError("Enhancement requested but no enhancer configured", field="enhance")

        manifest = self.store.create(job.job_id, policy)
        manifest.transition = transition.to_dict()
        manifest.profile = profile.to_dict()
        layout = self.store.layout(job.job_id)
        requests = self._segment_requests(job)

        logger.info(
            f"[{job.job_id}] Starting: {len(requests)} segments, policy={policy.value}, "
            f"transition={transition.type.value}/{transition.duration}s"
        )

        try:
            async with self._stage(manifest, JobStage.IMAGE_GENERATING):
                reference = await self._prepare_reference(job, manifest, layout)
            self._advance(manifest, JobStage.IMAGE_READY)

            async with self._stage(manifest, JobStage.SEGMENTS_GENERATING):
                await self.continuity.build_chain(
                    requests,
                    lambda segment: self._render_segment(segment, manifest, layout),
                    initial_frame=reference,
                    skip_failed=policy == FailurePolicy.BEST_EFFORT,
                    should_continue=lambda: not self.store.is_cancelled(job.job_id),
                    scenarios=job.scenarios,
                    chain=manifest.chain,
                )
                self._check_cancelled(manifest)

            chain = manifest.chain
            if policy == FailurePolicy.ABORT_ON_FIRST_FAILURE and chain.failed:
                first = chain.failed[0]
                self._fail(manifest, JobStage.SEGMENTS_GENERATING, f"Segment {first.index} failed: {first.error}")
                return self._result(manifest, len(requests))
            self._advance(manifest, JobStage.SEGMENTS_READY)

            async with self._stage(manifest, JobStage.STITCHING):
                stitched = await self.stitcher.stitch(chain, transition, profile, layout.stitched)
                manifest.stitched_path = stitched.output_path
                manifest.output_path = stitched.output_path
                manifest.achieved_duration = stitched.achieved_duration
                manifest.included_segments = stitched.included_segments
                manifest.skipped_segments = stitched.skipped_segments
                manifest.discontinuities = stitched.discontinuities
                manifest.profile = stitched.profile.to_dict()
                manifest.warnings.extend(stitched.warnings)
                if config.costs.stitch_per_job > 0:
                    manifest.add_cost(JobStage.STITCHING, "stitch", config.costs.stitch_per_job)

            if enhance:
                async with self._stage(manifest, JobStage.ENHANCING):
                    await self._enhance(manifest, layout)

            manifest.stage = JobStage.COMPLETE
            manifest.outcome = JobOutcome.SUCCEEDED_WITH_SKIPS if chain.failed else JobOutcome.SUCCEEDED
            logger.info(
                f"[{job.job_id}] Complete: {manifest.output_path} "
                f"({manifest.achieved_duration:.2f}s, ${manifest.total_cost:.2f})"
            )
        except JobCancelledError as e:
            manifest.failed_stage = manifest.stage
            manifest.stage = JobStage.CANCELLED
            manifest.outcome = JobOutcome.CANCELLED
            manifest.error = e.message
            logger.info(f"[{job.job_id}] Cancelled during {manifest.failed_stage.value}")
        except ClipChainError as e:
            self._fail(manifest, manifest.stage, e.message)
        except Exception as e:
            logger.exception(f"[{job.job_id}] Unexpected error during {manifest.stage.value}")
            self._fail(manifest, manifest.stage, f"Unexpected error: {type(e).__name__}: {e}")
        finally:
            self.store.finalize(manifest)

        return self._result(manifest, len(requests))

    def cancel(self, job_id: str) -> bool:
        """
        Request advisory cancellation. No new submissions are made for the
        job, and results of operations still in flight are discarded.
        """
        return self.store.mark_cancelled(job_id)

    async def close(self) -> None:
        await self.image_service.close()
        if self.video_service is not self.image_service:
            await self.video_service.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _stage(self, manifest: JobManifest, stage: JobStage):
        self._advance(manifest, stage)
        started = time.monotonic()
        try:
            yield
        finally:
            manifest.record_stage_time(stage, time.monotonic() - started)

    def _advance(self, manifest: JobManifest, stage: JobStage) -> None:
        self._check_cancelled(manifest)
        manifest.stage = stage
        self.store.update(manifest)
        logger.info(f"[{manifest.job_id}] Stage: {stage.value}")

    def _check_cancelled(self, manifest: JobManifest) -> None:
        if self.store.is_cancelled(manifest.job_id):
            raise JobCancelledError(manifest.job_id, stage=manifest.stage.value)

    def _fail(self, manifest: JobManifest, stage: JobStage, reason: str) -> None:
        manifest.failed_stage = stage
        manifest.stage = JobStage.FAILED
        manifest.outcome = JobOutcome.FAILED
        manifest.error = reason
        logger.error(f"[{manifest.job_id}] Failed during {stage.value}: {reason}")

    async def _prepare_reference(
        self,
        job: JobRequest,
        manifest: JobManifest,
        layout: JobLayout,
    ) -> str:
        if job.reference_image:
            path = Path(job.reference_image)
            if not path.is_file():
                raise MissingArtifactError(f"Reference image not found: {path}", artifact_path=str(path))
            get_image_dimensions(path)
            manifest.reference_image = str(path)
            logger.info(f"[{job.job_id}] Using supplied reference image {path}")
            return str(path)

        request = GenerationRequest(
            prompt=job.image_prompt,
            kind=ArtifactKind.IMAGE,
            aspect_ratio=job.aspect_ratio or self.config.video.aspect_ratio,
            resolution=job.resolution or self.config.video.resolution,
            negative_prompt=job.negative_prompt or self.config.video.negative_prompt or None,
            seed=job.seed,
        )
        _, result = await self._generate(
            self.image_poller,
            request,
            self.config.polling.image_interval,
            self.config.polling.image_max_attempts,
        )
        if result.is_done or self.config.costs.bill_failed_segments:
            manifest.add_cost(JobStage.IMAGE_GENERATING, "reference image", self.config.costs.image_per_call)
        self._check_cancelled(manifest)
        result.raise_for_error()

        default_ext = Path(result.artifact_ref or "").suffix or ".png"
        path = await self.image_poller.download(
            result,
            layout.reference_image(extension_for_mime(result.mime_type, default=default_ext)),
        )
        get_image_dimensions(path)
        manifest.reference_image = str(path)
        return str(path)

    async def _render_segment(
        self,
        segment: Segment,
        manifest: JobManifest,
        layout: JobLayout,
    ) -> Path:
        request = segment.request
        self.store.update(manifest)

        handle, result = await self._generate(
            self.video_poller,
            request,
            self.config.polling.interval,
            self.config.polling.max_attempts,
        )
        segment.operation_id = handle.id

        if result.is_done or self.config.costs.bill_failed_segments:
            segment.cost = self.config.costs.video_per_second * request.duration
            manifest.add_cost(
                JobStage.SEGMENTS_GENERATING,
                f"video segment {segment.index} ({request.duration}s)",
                segment.cost,
                segment_index=segment.index,
            )

        # Results arriving after cancellation are dropped
        self._check_cancelled(manifest)
        result.raise_for_error()

        path = await self.video_poller.download(result, layout.segment_video(segment.index))
        self.store.update(manifest)
        return path

    async def _generate(
        self,
        poller: OperationPoller,
        request: GenerationRequest,
        interval: float,
        max_attempts: int,
    ) -> Tuple[OperationHandle, OperationResult]:
        """Submit and wait for one remote operation under the throttle."""
        async with self.throttle:
            try:
                handle = await poller.submit(request)
                await self.throttle.on_success()
                try:
                    result = await poller.wait(handle, interval, max_attempts)
                finally:
                    # The caller owns the result from here on
                    poller.forget(handle)
            except QuotaExceededError:
                self.throttle.on_quota_exceeded()
                raise
        return handle, result

    async def _enhance(self, manifest: JobManifest, layout: JobLayout) -> None:
        try:
            enhanced = await self.enhancer.enhance(manifest.stitched_path, layout.final)
        except ClipChainError as e:
            if self.config.enhancement.required:
                raise
            message = f"Enhancement failed, keeping stitched output: {e.message}"
            logger.warning(f"[{manifest.job_id}] {message}")
            manifest.warnings.append(message)
            return

        manifest.output_path = enhanced.path
        if enhanced.cost > 0:
            manifest.add_cost(JobStage.ENHANCING, "enhancement", enhanced.cost)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _segment_requests(self, job: JobRequest) -> List[GenerationRequest]:
        video = self.config.video
        return [
            GenerationRequest(
                prompt=prompt,
                kind=ArtifactKind.VIDEO,
                duration=job.segment_duration or video.segment_duration,
                aspect_ratio=job.aspect_ratio or video.aspect_ratio,
                resolution=job.resolution or video.resolution,
                negative_prompt=job.negative_prompt or video.negative_prompt or None,
                seed=job.seed,
            )
            for prompt in job.segment_prompts
        ]

    def _result(self, manifest: JobManifest, total_segments: int) -> JobResult:
        outcomes = [
            {
                "index": s.index,
                "status": s.status.value,
                "conditioned_on": s.conditioned_on,
                "duration": s.duration,
                "cost": round(s.cost, 4),
                "error": s.error,
            }
            for s in manifest.chain
        ]
        for index in range(len(manifest.chain), total_segments):
            outcomes.append({
                "index": index,
                "status": SegmentStatus.PENDING.value,
                "conditioned_on": None,
                "duration": 0.0,
                "cost": 0.0,
                "error": "not started",
            })

        return JobResult(
            job_id=manifest.job_id,
            outcome=manifest.outcome or JobOutcome.FAILED,
            failed_stage=manifest.failed_stage,
            error=manifest.error,
            output_path=manifest.output_path if manifest.stage == JobStage.COMPLETE else None,
            achieved_duration=manifest.achieved_duration,
            segment_outcomes=outcomes,
            included_segments=list(manifest.included_segments),
            skipped_segments=list(manifest.skipped_segments),
            discontinuities=list(manifest.discontinuities),
            total_cost=manifest.total_cost,
            wall_clock=manifest.wall_clock,
            manifest_path=str(self.store.layout(manifest.job_id).manifest),
            warnings=list(manifest.warnings),
        )
