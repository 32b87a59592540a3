from pathlib import Path

import httpx
import pytest
from PIL import Image

from clipchain.api.base import RemoteStatus
from clipchain.api.google import GoogleGenerationService
from clipchain.core.config import (
    ChainingConfig,
    Config,
    EnhancementConfig,
    OutputConfig,
    PollingConfig,
)
from clipchain.core.exceptions import EncodingToolError, QuotaExceededError, ValidationError
from clipchain.workflow.enhancer import EnhancementResult, Enhancer
from clipchain.workflow.jobs import FailurePolicy, JobOutcome, JobStage
from clipchain.workflow.orchestrator import JobRequest, PipelineOrchestrator
from clipchain.workflow.throttle import AdaptiveThrottle

from conftest import FakeEncodingTool, FakeProbe, FakeService, png_bytes


def _config(tmp_path: Path, **sections) -> Config:
    return Config(
        output=OutputConfig(base_path=str(tmp_path / "output")),
        polling=PollingConfig(interval=1.0, max_attempts=5, image_interval=1.0, image_max_attempts=5),
        **sections,
    )


def _failed(reason: str = "blocked by safety filter"):
    return [RemoteStatus(done=True, error_code="FILTERED", error_message=reason)]


def _job(count: int = 3, job_id: str = "lighthouse", **kwargs) -> JobRequest:
    kwargs.setdefault("image_prompt", "A white lighthouse on a cliff at dusk")
    return JobRequest(
        job_id=job_id,
        segment_prompts=[f"shot {i}" for i in range(count)],
        **kwargs,
    )


class _FailingEnhancer(Enhancer):
    async def enhance(self, input_path, output_path) -> EnhancementResult:
        raise EncodingToolError("upscale failed", exit_code=1)


class _CopyEnhancer(Enhancer):
    async def enhance(self, input_path, output_path) -> EnhancementResult:
        Path(output_path).write_bytes(Path(input_path).read_bytes())
        return EnhancementResult(path=str(output_path), cost=0.25)


def _orchestrator(tmp_path, video=None, image=None, tool=None, probe=None, config=None, **kwargs):
    async def no_sleep(_seconds):
        return None

    return PipelineOrchestrator(
        config or _config(tmp_path),
        image_service=image or FakeService(name="img", payload=png_bytes(), mime_type="image/png"),
        video_service=video or FakeService(name="vid"),
        probe=probe or FakeProbe(durations={"stitched.mp4": 23.0}),
        encoding_tool=tool or FakeEncodingTool(),
        sleep=no_sleep,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_successful_job_runs_every_stage(tmp_path) -> None:
    video = FakeService(name="vid")
    orchestrator = _orchestrator(tmp_path, video=video)

    result = await orchestrator.run(_job(3))

    job_dir = tmp_path / "output" / "lighthouse"
    assert result.outcome == JobOutcome.SUCCEEDED
    assert result.achieved_duration == pytest.approx(23.0)
    assert result.output_path == str(job_dir / "stitched.mp4")
    assert [o["status"] for o in result.segment_outcomes] == ["ready"] * 3
    # 0.04 for the image, 3 x 8s x 0.15 for the segments
    assert result.total_cost == pytest.approx(3.64)

    assert video.submitted[0].conditioning_image == str(job_dir / "reference.png")
    assert video.submitted[1].conditioning_image == str(job_dir / "segment_000_last.jpg")
    assert video.submitted[2].conditioning_image == str(job_dir / "segment_001_last.jpg")

    manifest = orchestrator.store.load("lighthouse")
    assert manifest["stage"] == "complete"
    assert manifest["outcome"] == "succeeded"
    assert len(manifest["costs"]["items"]) == 4
    assert set(manifest["stage_timings"]) >= {"image_generating", "segments_generating", "stitching"}
    assert manifest["finished_at"] is not None


@pytest.mark.asyncio
async def test_best_effort_skips_failed_segment(tmp_path) -> None:
    video = FakeService(name="vid", scripts={2: _failed()})
    orchestrator = _orchestrator(tmp_path, video=video)

    result = await orchestrator.run(_job(4, policy=FailurePolicy.BEST_EFFORT))

    job_dir = tmp_path / "output" / "lighthouse"
    assert result.outcome == JobOutcome.SUCCEEDED_WITH_SKIPS
    assert [o["status"] for o in result.segment_outcomes] == ["ready", "ready", "failed", "ready"]
    assert result.segment_outcomes[2]["error"] == "Operation vid-op-2 failed: blocked by safety filter"
    assert result.segment_outcomes[3]["conditioned_on"] == 1
    assert video.submitted[3].conditioning_image == str(job_dir / "segment_001_last.jpg")
    assert result.discontinuities == [{"after": 1, "before": 3}]
    assert result.included_segments == [0, 1, 3]
    assert not (job_dir / "segment_002_last.jpg").exists()

    manifest = orchestrator.store.load("lighthouse")
    assert manifest["included_segments"] == [0, 1, 3]
    assert manifest["skipped_segments"] == [
        {"index": 2, "reason": "Operation vid-op-2 failed: blocked by safety filter"}
    ]
    assert manifest["discontinuities"] == [{"after": 1, "before": 3}]


@pytest.mark.asyncio
async def test_abort_policy_fails_on_first_segment_failure(tmp_path) -> None:
    video = FakeService(name="vid", scripts={1: _failed()})
    tool = FakeEncodingTool()
    orchestrator = _orchestrator(tmp_path, video=video, tool=tool)

    result = await orchestrator.run(_job(4, policy=FailurePolicy.ABORT_ON_FIRST_FAILURE))

    assert result.outcome == JobOutcome.FAILED
    assert result.failed_stage == JobStage.SEGMENTS_GENERATING
    assert "Segment 1 failed" in result.error
    assert len(video.submitted) == 2
    assert [o["status"] for o in result.segment_outcomes] == ["ready", "failed", "pending", "pending"]
    assert tool.invocations == []
    assert result.output_path is None
    assert orchestrator.store.load("lighthouse")["stage"] == "failed"


@pytest.mark.asyncio
async def test_failed_segments_are_billed_only_when_configured(tmp_path) -> None:
    config = _config(tmp_path)
    config.costs.bill_failed_segments = True
    video = FakeService(name="vid", scripts={1: _failed()})
    orchestrator = _orchestrator(tmp_path, video=video, config=config)

    result = await orchestrator.run(_job(2, policy=FailurePolicy.BEST_EFFORT))

    assert result.total_cost == pytest.approx(0.04 + 2 * 8 * 0.15)


@pytest.mark.asyncio
async def test_supplied_reference_image_skips_image_generation(tmp_path) -> None:
    reference = tmp_path / "ref.png"
    Image.new("RGB", (32, 32)).save(reference)
    image = FakeService(name="img")
    video = FakeService(name="vid")
    orchestrator = _orchestrator(tmp_path, image=image, video=video)

    result = await orchestrator.run(_job(3, image_prompt=None, reference_image=str(reference)))

    assert result.outcome == JobOutcome.SUCCEEDED
    assert image.submitted == []
    assert video.submitted[0].conditioning_image == str(reference)
    assert result.total_cost == pytest.approx(3.6)


@pytest.mark.asyncio
async def test_reference_image_failure_fails_job(tmp_path) -> None:
    image = FakeService(name="img", scripts={0: _failed("prompt rejected")})
    video = FakeService(name="vid")
    orchestrator = _orchestrator(tmp_path, image=image, video=video)

    result = await orchestrator.run(_job(3))

    assert result.outcome == JobOutcome.FAILED
    assert result.failed_stage == JobStage.IMAGE_GENERATING
    assert video.submitted == []


@pytest.mark.asyncio
async def test_all_segments_failing_cannot_be_stitched(tmp_path) -> None:
    video = FakeService(name="vid", scripts={0: _failed(), 1: _failed()})
    orchestrator = _orchestrator(tmp_path, video=video)

    result = await orchestrator.run(_job(2, policy=FailurePolicy.BEST_EFFORT))

    assert result.outcome == JobOutcome.FAILED
    assert result.failed_stage == JobStage.STITCHING


@pytest.mark.asyncio
async def test_encoding_failure_is_fatal(tmp_path) -> None:
    tool = FakeEncodingTool(error=EncodingToolError("ffmpeg exited with code 1", exit_code=1))
    orchestrator = _orchestrator(tmp_path, tool=tool)

    result = await orchestrator.run(_job(2))

    assert result.outcome == JobOutcome.FAILED
    assert result.failed_stage == JobStage.STITCHING
    assert orchestrator.store.load("lighthouse")["error"] == "ffmpeg exited with code 1"


@pytest.mark.asyncio
async def test_cancellation_stops_further_submissions(tmp_path) -> None:
    holder = {}

    def cancel_on_second(number, _request):
        if number == 1:
            holder["orchestrator"].cancel("lighthouse")

    video = FakeService(name="vid", on_submit=cancel_on_second)
    orchestrator = _orchestrator(tmp_path, video=video)
    holder["orchestrator"] = orchestrator

    result = await orchestrator.run(_job(4))

    assert result.outcome == JobOutcome.CANCELLED
    assert result.failed_stage == JobStage.SEGMENTS_GENERATING
    assert len(video.submitted) == 2
    # The in-flight result of segment 1 was discarded
    assert not (tmp_path / "output" / "lighthouse" / "segment_001.mp4").exists()
    assert orchestrator.store.load("lighthouse")["stage"] == "cancelled"
    assert orchestrator.cancel("lighthouse") is False


@pytest.mark.asyncio
async def test_optional_enhancement_failure_keeps_stitched_output(tmp_path) -> None:
    orchestrator = _orchestrator(tmp_path, enhancer=_FailingEnhancer())

    result = await orchestrator.run(_job(3, enhance=True))

    assert result.outcome == JobOutcome.SUCCEEDED
    assert result.output_path.endswith("stitched.mp4")
    assert any("Enhancement failed" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_required_enhancement_failure_fails_job(tmp_path) -> None:
    config = _config(tmp_path, enhancement=EnhancementConfig(enabled=True, required=True))
    orchestrator = _orchestrator(tmp_path, config=config, enhancer=_FailingEnhancer())

    result = await orchestrator.run(_job(3))

    assert result.outcome == JobOutcome.FAILED
    assert result.failed_stage == JobStage.ENHANCING


@pytest.mark.asyncio
async def test_enhancement_output_becomes_final(tmp_path) -> None:
    orchestrator = _orchestrator(tmp_path, enhancer=_CopyEnhancer())

    result = await orchestrator.run(_job(3, enhance=True))

    assert result.output_path.endswith("final.mp4")
    assert result.total_cost == pytest.approx(3.64 + 0.25)


@pytest.mark.asyncio
async def test_quota_error_lowers_throttle_limit(tmp_path) -> None:
    throttle = AdaptiveThrottle(max_concurrent=4, min_concurrent=1, recovery_successes=10)
    video = FakeService(name="vid", submit_errors={1: QuotaExceededError("quota", service="vid")})
    config = _config(tmp_path, chaining=ChainingConfig(failure_policy="best-effort"))
    orchestrator = _orchestrator(tmp_path, video=video, config=config, throttle=throttle)

    result = await orchestrator.run(_job(3))

    assert throttle.limit == 2
    assert result.outcome == JobOutcome.SUCCEEDED_WITH_SKIPS
    assert result.segment_outcomes[1]["status"] == "failed"


@pytest.mark.asyncio
async def test_unreadable_status_response_only_skips_that_segment(tmp_path) -> None:
    posts = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            name = "operations/a" if not posts else "operations/b"
            posts.append(name)
            return httpx.Response(200, json={"name": name})
        if request.url.path.endswith("/operations/a"):
            return httpx.Response(200, text="<html>gateway hiccup</html>")
        if request.url.path.endswith("/operations/b"):
            return httpx.Response(200, json={
                "done": True,
                "response": {"generateVideoResponse": {"generatedSamples": [
                    {"video": {"uri": "https://files.example/b.mp4"}}
                ]}},
            })
        return httpx.Response(200, content=b"mp4-bytes")

    video = GoogleGenerationService(api_key="test-key", transport=httpx.MockTransport(handler))
    orchestrator = _orchestrator(tmp_path, video=video)

    result = await orchestrator.run(_job(2, policy=FailurePolicy.BEST_EFFORT))

    assert result.outcome == JobOutcome.SUCCEEDED_WITH_SKIPS
    assert [o["status"] for o in result.segment_outcomes] == ["failed", "ready"]
    assert "Unreadable status response" in result.segment_outcomes[0]["error"]
    manifest = orchestrator.store.load("lighthouse")
    assert manifest["stage"] == "complete"
    assert manifest["outcome"] == "succeeded_with_skips"


@pytest.mark.asyncio
async def test_unexpected_error_still_ends_in_failed_manifest(tmp_path) -> None:
    tool = FakeEncodingTool(error=RuntimeError("encoder crashed"))
    orchestrator = _orchestrator(tmp_path, tool=tool)

    result = await orchestrator.run(_job(2))

    assert result.outcome == JobOutcome.FAILED
    assert result.failed_stage == JobStage.STITCHING
    assert "encoder crashed" in result.error
    manifest = orchestrator.store.load("lighthouse")
    assert manifest["stage"] == "failed"
    assert manifest["outcome"] == "failed"
    assert manifest["finished_at"] is not None


@pytest.mark.asyncio
async def test_finished_operations_are_not_kept_after_a_job(tmp_path) -> None:
    video = FakeService(name="vid", scripts={1: _failed()})
    orchestrator = _orchestrator(tmp_path, video=video)

    for n in range(3):
        await orchestrator.run(_job(3, job_id=f"job-{n}", policy=FailurePolicy.BEST_EFFORT))

    assert orchestrator.image_poller.memoised == 0
    assert orchestrator.video_poller.memoised == 0


@pytest.mark.asyncio
async def test_job_ids_sharing_a_directory_are_rejected(tmp_path) -> None:
    orchestrator = _orchestrator(tmp_path)
    await orchestrator.run(_job(1, job_id="harbour at dawn"))

    with pytest.raises(ValidationError):
        await orchestrator.run(_job(1, job_id="harbour_at_dawn"))
    assert orchestrator.store.load("harbour at dawn")["job_id"] == "harbour at dawn"
