"""
Continuity Manager
==================

Keeps consecutive segments visually continuous: the last frame of a
finished segment becomes the conditioning image of the next request.

Frames are only ever taken from segments that are READY, i.e. whose
artifact was fully written and probed. A frame that cannot be taken turns
the segment into a failure.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence, Union

from ..api.base import GenerationRequest
from ..core.exceptions import ClipChainError, JobCancelledError, MissingArtifactError
from ..utils.image_utils import get_image_dimensions
from ..utils.media import MediaProbe
from .jobs import Chain, Segment, SegmentStatus

logger = logging.getLogger(__name__)


DEFAULT_EPSILON = 0.1

# Renders one segment and returns the path of its durably written artifact
RenderFn = Callable[[Segment], Awaitable[Union[str, Path]]]


@dataclass
class FrameImage:
    """A still extracted from a rendered segment."""

    path: str
    timestamp: float
    source: str
    width: int
    height: int


class ContinuityManager:
    """
    Extracts boundary frames and drives sequential, frame-conditioned rendering.

    Args:
        probe: ffprobe/ffmpeg wrapper
        epsilon: Distance in seconds from the end at which the last frame is taken
        frame_format: "jpg" or "png"
        quality: JPEG quality (1-100)
    """

    def __init__(
        self,
        probe: MediaProbe,
        epsilon: float = DEFAULT_EPSILON,
        frame_format: str = "jpg",
        quality: int = 95,
    ):
        if epsilon <= 0:
            raise ValueError("epsilon must be positive")
        self.probe = probe
        self.epsilon = epsilon
        self.frame_format = frame_format
        self.quality = quality

    # -------------------------------------------------------------------------
    # Frame extraction
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_artifact(video_path: Path) -> None:
        if video_path.name.endswith(".part"):
            raise MissingArtifactError(
                f"Refusing to read partially written file: {video_path}",
                artifact_path=str(video_path),
            )
        if not video_path.is_file():
            raise MissingArtifactError(f"Video not found: {video_path}", artifact_path=str(video_path))
        if video_path.stat().st_size == 0:
            raise MissingArtifactError(f"Video is empty: {video_path}", artifact_path=str(video_path))

    def _frame_path(self, video_path: Path, position: str) -> Path:
        return video_path.with_name(f"{video_path.stem}_{position}.{self.frame_format}")

    async def _extract(
        self,
        video_path: Path,
        timestamp: float,
        output_path: Path,
    ) -> FrameImage:
        await self.probe.grab_frame(video_path, timestamp, output_path, quality=self.quality)
        width, height = get_image_dimensions(output_path)
        logger.info(f"Extracted frame at {timestamp:.3f}s from {video_path.name} ({width}x{height})")
        return FrameImage(
            path=str(output_path),
            timestamp=timestamp,
            source=str(video_path),
            width=width,
            height=height,
        )

    async def extract_last_frame(
        self,
        video_path: Union[str, Path],
        output_path: Optional[Union[str, Path]] = None,
        duration: Optional[float] = None,
    ) -> FrameImage:
        """
        Extract the frame ``epsilon`` seconds before the end of the video.

        Args:
            video_path: Fully written video file
            output_path: Where to write the frame (``<stem>_last.<fmt>`` by default)
            duration: Already measured duration, probed when omitted

        Raises:
            MissingArtifactError: file missing, empty, partial or unreadable
        """
        video_path = Path(video_path)
        self._check_artifact(video_path)

        if duration is None:
            duration = await self.probe.duration(video_path)
        if duration <= 0:
            raise MissingArtifactError(
                f"Video has no measurable duration: {video_path}",
                artifact_path=str(video_path),
            )

        # Seeking to the exact duration yields no frame on most containers
        timestamp = max(0.0, duration - self.epsilon)

        output_path = Path(output_path) if output_path else self._frame_path(video_path, "last")
        return await self._extract(video_path, timestamp, output_path)

    async def extract_first_frame(
        self,
        video_path: Union[str, Path],
        output_path: Optional[Union[str, Path]] = None,
    ) -> FrameImage:
        """Extract the frame at offset 0."""
        video_path = Path(video_path)
        self._check_artifact(video_path)
        output_path = Path(output_path) if output_path else self._frame_path(video_path, "first")
        return await self._extract(video_path, 0.0, output_path)

    # -------------------------------------------------------------------------
    # Chaining
    # -------------------------------------------------------------------------

    async def build_chain(
        self,
        requests: Sequence[GenerationRequest],
        render: RenderFn,
        initial_frame: Optional[Union[str, Path]] = None,
        skip_failed: bool = False,
        should_continue: Optional[Callable[[], bool]] = None,
        scenarios: Optional[Sequence[str]] = None,
        chain: Optional[Chain] = None,
    ) -> Chain:
        """
        Render requests strictly in order, conditioning each one on the last
        frame of the most recent READY segment.

        Args:
            requests: One request per segment
            render: Coroutine that generates a segment and returns its artifact path
            initial_frame: Conditioning image of the first segment (reference image)
            skip_failed: Continue past failed segments instead of stopping
            should_continue: Checked before every submission
            scenarios: Optional scenario text per segment, recorded on the segments
            chain: Existing empty chain to append to, a new one by default

        Returns:
            The chain; segments that were never started are not part of it
        """
        chain = chain if chain is not None else Chain()
        seed_frame: Optional[str] = str(initial_frame) if initial_frame else None
        seed_index: Optional[int] = None
        last_index = len(requests) - 1

        for index, request in enumerate(requests):
            if should_continue is not None and not should_continue():
                chain.stopped_reason = "cancelled"
                logger.info(f"Chaining stopped before segment {index}: cancelled")
                break

            if seed_frame:
                request = request.with_conditioning_image(seed_frame)

            segment = Segment(
                index=index,
                request=request,
                scenario=scenarios[index] if scenarios and index < len(scenarios) else "",
                status=SegmentStatus.GENERATING,
                conditioned_on=seed_index,
            )
            chain.append(segment)

            try:
                artifact = Path(await render(segment))
                info = await self.probe.probe(artifact)
                if info.duration <= 0:
                    raise MissingArtifactError(
                        f"Segment {index} has no measurable duration",
                        artifact_path=str(artifact),
                    )
                segment.mark_ready(artifact, info.duration, info.has_audio)

                # Only a following request needs the frame
                if index < last_index:
                    frame = await self.extract_last_frame(artifact, duration=info.duration)
                    segment.last_frame_path = frame.path
            except JobCancelledError:
                raise
            except ClipChainError as e:
                segment.mark_failed(e.message)
                logger.warning(f"Segment {index} failed: {e.message}")
                if not skip_failed:
                    chain.stopped_reason = f"segment {index} failed"
                    break
                continue

            seed_frame = segment.last_frame_path
            seed_index = index

        logger.info(
            f"Chain built: {len(chain.ready)} ready, {len(chain.failed)} failed, "
            f"{chain.total_duration:.2f}s of footage"
        )
        return chain
