from pathlib import Path

import pytest

from clipchain.api.base import GenerationRequest
from clipchain.core.exceptions import JobCancelledError, MissingArtifactError, ServiceError
from clipchain.workflow.continuity import ContinuityManager
from clipchain.workflow.jobs import SegmentStatus

from conftest import FakeProbe


def _write_video(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"fake-mp4")
    return path


def _requests(count: int):
    return [GenerationRequest(prompt=f"shot {i}") for i in range(count)]


def _renderer(tmp_path: Path, failing=(), seen=None):
    async def render(segment):
        if seen is not None:
            seen.append((segment.index, segment.request.conditioning_image))
        if segment.index in failing:
            raise ServiceError(f"segment {segment.index} rejected", service="fake")
        return _write_video(tmp_path / f"segment_{segment.index:03d}.mp4")

    return render


@pytest.mark.asyncio
async def test_last_frame_is_taken_before_the_end(tmp_path) -> None:
    probe = FakeProbe(durations={"clip.mp4": 8.0, "short.mp4": 0.05})
    manager = ContinuityManager(probe, epsilon=0.1)

    frame = await manager.extract_last_frame(_write_video(tmp_path / "clip.mp4"))
    short = await manager.extract_last_frame(_write_video(tmp_path / "short.mp4"))

    assert frame.timestamp == pytest.approx(7.9)
    assert frame.timestamp < 8.0
    assert short.timestamp == 0.0
    assert short.timestamp < 0.05
    assert Path(frame.path).name == "clip_last.jpg"
    assert (frame.width, frame.height) == (64, 36)


@pytest.mark.asyncio
async def test_first_frame_is_taken_at_zero(tmp_path) -> None:
    probe = FakeProbe()
    manager = ContinuityManager(probe)

    frame = await manager.extract_first_frame(_write_video(tmp_path / "clip.mp4"))

    assert frame.timestamp == 0.0
    assert Path(frame.path).name == "clip_first.jpg"


@pytest.mark.asyncio
async def test_extraction_rejects_missing_partial_and_empty_files(tmp_path) -> None:
    manager = ContinuityManager(FakeProbe())
    partial = _write_video(tmp_path / "segment_000.mp4.part")
    empty = tmp_path / "empty.mp4"
    empty.write_bytes(b"")

    with pytest.raises(MissingArtifactError):
        await manager.extract_last_frame(tmp_path / "missing.mp4")
    with pytest.raises(MissingArtifactError):
        await manager.extract_last_frame(partial)
    with pytest.raises(MissingArtifactError):
        await manager.extract_last_frame(empty)


@pytest.mark.asyncio
async def test_zero_duration_video_is_missing_artifact(tmp_path) -> None:
    manager = ContinuityManager(FakeProbe(durations={"clip.mp4": 0.0}))

    with pytest.raises(MissingArtifactError):
        await manager.extract_last_frame(_write_video(tmp_path / "clip.mp4"))


@pytest.mark.asyncio
async def test_each_segment_is_conditioned_on_the_previous_last_frame(tmp_path) -> None:
    probe = FakeProbe()
    manager = ContinuityManager(probe)
    seen = []
    reference = str(tmp_path / "reference.png")

    chain = await manager.build_chain(_requests(3), _renderer(tmp_path, seen=seen), initial_frame=reference)

    assert [s.status for s in chain] == [SegmentStatus.READY] * 3
    assert seen[0] == (0, reference)
    assert seen[1] == (1, str(tmp_path / "segment_000_last.jpg"))
    assert seen[2] == (2, str(tmp_path / "segment_001_last.jpg"))
    assert [s.conditioned_on for s in chain] == [None, 0, 1]
    assert chain.total_duration == pytest.approx(24.0)
    # The final segment seeds nothing
    assert [name for name, _ in probe.grabs] == ["segment_000.mp4", "segment_001.mp4"]
    assert chain[2].last_frame_path is None


@pytest.mark.asyncio
async def test_best_effort_conditions_on_last_good_frame(tmp_path) -> None:
    probe = FakeProbe()
    manager = ContinuityManager(probe)
    seen = []

    chain = await manager.build_chain(
        _requests(4),
        _renderer(tmp_path, failing={2}, seen=seen),
        skip_failed=True,
    )

    assert [s.index for s in chain.ready] == [0, 1, 3]
    assert [s.index for s in chain.failed] == [2]
    assert chain[2].error == "segment 2 rejected"
    assert chain[3].conditioned_on == 1
    assert seen[3] == (3, str(tmp_path / "segment_001_last.jpg"))
    assert "segment_002.mp4" not in [name for name, _ in probe.grabs]
    assert chain.stopped_reason is None


@pytest.mark.asyncio
async def test_first_failure_stops_the_chain_by_default(tmp_path) -> None:
    manager = ContinuityManager(FakeProbe())
    seen = []

    chain = await manager.build_chain(_requests(4), _renderer(tmp_path, failing={1}, seen=seen))

    assert len(chain) == 2
    assert chain[1].status == SegmentStatus.FAILED
    assert [index for index, _ in seen] == [0, 1]
    assert chain.stopped_reason == "segment 1 failed"


@pytest.mark.asyncio
async def test_frame_extraction_failure_fails_the_segment(tmp_path) -> None:
    probe = FakeProbe(broken_frames=["segment_000.mp4"])
    manager = ContinuityManager(probe)
    seen = []

    chain = await manager.build_chain(_requests(3), _renderer(tmp_path, seen=seen), skip_failed=True)

    assert chain[0].status == SegmentStatus.FAILED
    assert chain[0].last_frame_path is None
    # Segment 1 falls back to the request's own conditioning (none)
    assert seen[1] == (1, None)
    assert chain[1].conditioned_on is None


@pytest.mark.asyncio
async def test_should_continue_stops_before_submission(tmp_path) -> None:
    manager = ContinuityManager(FakeProbe())
    seen = []
    calls = []

    def should_continue() -> bool:
        calls.append(1)
        return len(calls) <= 1

    chain = await manager.build_chain(_requests(3), _renderer(tmp_path, seen=seen), should_continue=should_continue)

    assert len(chain) == 1
    assert chain.stopped_reason == "cancelled"
    assert [index for index, _ in seen] == [0]


@pytest.mark.asyncio
async def test_cancellation_inside_render_propagates(tmp_path) -> None:
    manager = ContinuityManager(FakeProbe())

    async def render(segment):
        raise JobCancelledError("job-1", stage="segments_generating")

    with pytest.raises(JobCancelledError):
        await manager.build_chain(_requests(2), render, skip_failed=True)
