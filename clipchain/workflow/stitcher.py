"""
Stitching Engine
================

Assembles the READY segments of a chain into one video.

The filter graph is a left fold: every segment is merged into the stream
accumulated so far, video with ``xfade`` and audio with ``acrossfade``
using the same duration and offset, so N segments need N-1 filter nodes
and one encoder run. The output is always encoded with the compatibility
baseline (H.264 High@4.0, yuv420p, AAC); older players reject anything
else with opaque errors.
"""

import asyncio
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple, Union

from ..core.exceptions import (
    EncodingToolError,
    MissingArtifactError,
    NothingToStitchError,
    ValidationError,
)
from ..utils.media import MediaProbe
from .jobs import Chain, Segment

logger = logging.getLogger(__name__)


DEFAULT_TOOL_TIMEOUT = 900
SILENCE_SOURCE = "anullsrc=channel_layout=stereo:sample_rate=48000"
DURATION_TOLERANCE = 0.25


# =============================================================================
# Transitions and Encoding Profiles
# =============================================================================


class TransitionType(Enum):
    HARD_CUT = "hard-cut"
    DISSOLVE = "dissolve"
    FADE = "fade"
    WIPE = "wipe"

    @property
    def xfade_name(self) -> Optional[str]:
        """Name of the xfade transition, None for a plain cut."""
        return {
            TransitionType.FADE: "fade",
            TransitionType.DISSOLVE: "dissolve",
            TransitionType.WIPE: "wipeleft",
        }.get(self)


@dataclass(frozen=True)
class TransitionSpec:
    """Transition applied at every boundary between adjacent segments."""

    type: TransitionType = TransitionType.FADE
    duration: float = 0.5

    def __post_init__(self):
        if self.duration < 0:
            raise ValidationError(
                f"Transition duration must be >= 0, got {self.duration}",
                field="transition.duration",
                value=self.duration,
            )

    @classmethod
    def from_config(cls, transition_type: str, duration: float) -> "TransitionSpec":
        try:
            kind = TransitionType(transition_type)
        except ValueError:
            raise ValidationError(
                f"Unknown transition type: {transition_type}",
                field="transition.type",
                value=transition_type,
            )
        return cls(type=kind, duration=duration)

    @property
    def effective_duration(self) -> float:
        """Seconds removed from the output per boundary."""
        if self.type == TransitionType.HARD_CUT:
            return 0.0
        return self.duration

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "duration": self.duration}


@dataclass(frozen=True)
class EncodingProfile:
    """Output encoding parameters."""

    video_codec: str = "libx264"
    pix_fmt: str = "yuv420p"
    profile: str = "high"
    level: str = "4.0"
    crf: int = 18
    preset: str = "fast"
    audio_codec: str = "aac"
    audio_bitrate: str = "192k"
    movflags: str = "+faststart"
    container: str = "mp4"

    # Fields a caller may tune without leaving the baseline
    TUNABLE = ("crf", "preset")

    def enforce_baseline(self) -> Tuple["EncodingProfile", List[str]]:
        """
        Return the baseline profile carrying only this profile's tunables.

        Returns:
            Tuple of (effective profile, names of overridden fields)
        """
        effective = replace(COMPATIBILITY_BASELINE, crf=self.crf, preset=self.preset)
        overridden = [
            name for name in self.to_dict()
            if name not in self.TUNABLE and getattr(self, name) != getattr(effective, name)
        ]
        return effective, overridden

    def video_args(self) -> List[str]:
        return [
            "-c:v", self.video_codec,
            "-pix_fmt", self.pix_fmt,
            "-profile:v", self.profile,
            "-level", self.level,
            "-crf", str(self.crf),
            "-preset", self.preset,
        ]

    def audio_args(self) -> List[str]:
        return ["-c:a", self.audio_codec, "-b:a", self.audio_bitrate]

    def container_args(self) -> List[str]:
        return ["-movflags", self.movflags, "-f", self.container]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "video_codec": self.video_codec,
            "pix_fmt": self.pix_fmt,
            "profile": self.profile,
            "level": self.level,
            "crf": self.crf,
            "preset": self.preset,
            "audio_codec": self.audio_codec,
            "audio_bitrate": self.audio_bitrate,
            "movflags": self.movflags,
            "container": self.container,
        }


COMPATIBILITY_BASELINE = EncodingProfile()


# =============================================================================
# Encoding Tool
# =============================================================================


@dataclass(frozen=True)
class EncodingInput:
    """One input of an encoder run: a file or a generated lavfi source."""

    source: str
    lavfi: bool = False
    duration: Optional[float] = None

    def to_args(self) -> List[str]:
        args: List[str] = []
        if self.lavfi:
            args += ["-f", "lavfi"]
        if self.duration is not None:
            args += ["-t", f"{self.duration:.3f}"]
        return args + ["-i", self.source]


@dataclass
class EncodingInvocation:
    """Everything the encoding tool needs for one run."""

    inputs: List[EncodingInput]
    output_path: str
    filter_graph: Optional[str] = None
    maps: List[str] = field(default_factory=list)
    output_args: List[str] = field(default_factory=list)

    def to_args(self, output_path: Optional[str] = None) -> List[str]:
        args = ["-y", "-hide_banner", "-loglevel", "error"]
        for item in self.inputs:
            args += item.to_args()
        if self.filter_graph:
            args += ["-filter_complex", self.filter_graph]
        for label in self.maps:
            args += ["-map", label]
        args += self.output_args
        args.append(output_path or self.output_path)
        return args


class EncodingTool(ABC):
    """Capability that turns an invocation into an output file."""

    @abstractmethod
    async def encode(self, invocation: EncodingInvocation) -> Path:
        """
        Run the invocation.

        Raises:
            EncodingToolError: tool missing, non-zero exit or no output
        """


class FfmpegEncodingTool(EncodingTool):
    """Runs ffmpeg in a worker thread and renames the output into place."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: int = DEFAULT_TOOL_TIMEOUT):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    async def encode(self, invocation: EncodingInvocation) -> Path:
        output_path = Path(invocation.output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        part_path = output_path.with_name(output_path.name + ".part")
        cmd = [self.ffmpeg_path] + invocation.to_args(str(part_path))

        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise EncodingToolError(f"{self.ffmpeg_path} not found. Please install ffmpeg.")
        except subprocess.TimeoutExpired:
            part_path.unlink(missing_ok=True)
            raise EncodingToolError(f"ffmpeg timed out after {self.timeout}s")

        if result.returncode != 0:
            part_path.unlink(missing_ok=True)
            raise EncodingToolError(
                f"ffmpeg exited with code {result.returncode}",
                exit_code=result.returncode,
                stderr=result.stderr,
            )
        if not part_path.is_file() or part_path.stat().st_size == 0:
            raise EncodingToolError(
                f"ffmpeg reported success but wrote no output: {output_path}",
                exit_code=result.returncode,
                stderr=result.stderr,
            )

        os.replace(part_path, output_path)
        return output_path


# =============================================================================
# Stitching
# =============================================================================


@dataclass
class StitchResult:
    """Outcome of one stitching run."""

    output_path: str
    achieved_duration: float
    included_segments: List[int]
    skipped_segments: List[Dict[str, Any]]
    discontinuities: List[Dict[str, Any]]
    transitions: List[Dict[str, Any]]
    profile: EncodingProfile
    has_audio: bool = True
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output_path": self.output_path,
            "achieved_duration": round(self.achieved_duration, 3),
            "included_segments": self.included_segments,
            "skipped_segments": self.skipped_segments,
            "discontinuities": self.discontinuities,
            "transitions": self.transitions,
            "profile": self.profile.to_dict(),
            "has_audio": self.has_audio,
            "warnings": self.warnings,
        }


@dataclass
class StitchPlan:
    """Filter graph and bookkeeping derived from a chain, before encoding."""

    invocation: EncodingInvocation
    achieved_duration: float
    transitions: List[Dict[str, Any]]
    discontinuities: List[Dict[str, Any]]
    has_audio: bool


class StitchingEngine:
    """
    Builds and runs the encoder invocation for a chain.

    Args:
        tool: Encoding tool that executes the invocation
        probe: Optional probe used to check the achieved duration of the output
    """

    def __init__(self, tool: EncodingTool, probe: Optional[MediaProbe] = None):
        self.tool = tool
        self.probe = probe

    async def stitch(
        self,
        chain: Chain,
        transition: TransitionSpec,
        profile: Optional[EncodingProfile] = None,
        output_path: Union[str, Path] = "stitched.mp4",
    ) -> StitchResult:
        """
        Stitch the READY segments of ``chain`` into ``output_path``.

        Raises:
            NothingToStitchError: no READY segment
            ValidationError: transition not shorter than a segment it touches
            MissingArtifactError: a READY segment's file is gone
            EncodingToolError: the encoder failed
        """
        included = [s for s in chain if s.is_ready]
        skipped = [
            {"index": s.index, "reason": s.error or f"segment is {s.status.value}"}
            for s in chain if not s.is_ready
        ]

        if not included:
            raise NothingToStitchError(
                f"No ready segments to stitch ({len(skipped)} skipped)",
                skipped=len(skipped),
            )

        for segment in included:
            if not segment.artifact_path or not Path(segment.artifact_path).is_file():
                raise MissingArtifactError(
                    f"Artifact of segment {segment.index} is missing",
                    artifact_path=segment.artifact_path,
                )

        requested = profile or COMPATIBILITY_BASELINE
        effective, overridden = requested.enforce_baseline()
        warnings: List[str] = []
        if overridden:
            message = f"Encoding profile fields overridden by compatibility baseline: {', '.join(overridden)}"
            logger.warning(message)
            warnings.append(message)

        plan = self.plan(included, transition, effective, str(output_path))
        for item in plan.discontinuities:
            logger.warning(
                f"Hard cut between segments {item['after']} and {item['before']}: "
                f"skipped segments in between"
            )

        logger.info(
            f"Stitching {len(included)} segments ({len(skipped)} skipped), "
            f"expected duration {plan.achieved_duration:.2f}s"
        )
        written = await self.tool.encode(plan.invocation)

        if self.probe is not None:
            measured = await self.probe.duration(written)
            if abs(measured - plan.achieved_duration) > DURATION_TOLERANCE:
                message = (
                    f"Stitched duration {measured:.2f}s differs from expected "
                    f"{plan.achieved_duration:.2f}s"
                )
                logger.warning(message)
                warnings.append(message)

        return StitchResult(
            output_path=str(written),
            achieved_duration=plan.achieved_duration,
            included_segments=[s.index for s in included],
            skipped_segments=skipped,
            discontinuities=plan.discontinuities,
            transitions=plan.transitions,
            profile=effective,
            has_audio=plan.has_audio,
            warnings=warnings,
        )

    def plan(
        self,
        included: List[Segment],
        transition: TransitionSpec,
        profile: EncodingProfile,
        output_path: str,
    ) -> StitchPlan:
        """Build the filter graph for the given READY segments."""
        fade = transition.effective_duration
        has_audio = any(s.has_audio for s in included)

        # Boundary k joins included[k-1] and included[k]
        crossfaded: List[bool] = []
        discontinuities: List[Dict[str, Any]] = []
        for prev, cur in zip(included, included[1:]):
            adjacent = cur.index == prev.index + 1
            if not adjacent:
                discontinuities.append({"after": prev.index, "before": cur.index})
            crossfaded.append(adjacent and fade > 0)

        for k, is_fade in enumerate(crossfaded):
            if not is_fade:
                continue
            for segment in (included[k], included[k + 1]):
                if fade >= segment.duration:
                    raise ValidationError(
                        f"Transition of {fade}s is not shorter than segment "
                        f"{segment.index} ({segment.duration:.2f}s)",
                        field="transition.duration",
                        value=fade,
                        constraint=f"< {segment.duration}",
                    )

        inputs = [EncodingInput(s.artifact_path) for s in included]
        filters: List[str] = []

        for i, segment in enumerate(included):
            filters.append(f"[{i}:v]setpts=PTS-STARTPTS,settb=AVTB,format={profile.pix_fmt}[v{i}]")
            if not has_audio:
                continue
            if segment.has_audio:
                source = f"{i}:a"
            else:
                # Silence keeps the audio chain the same length as the video chain
                inputs.append(EncodingInput(SILENCE_SOURCE, lavfi=True, duration=segment.duration))
                source = f"{len(inputs) - 1}:a"
            filters.append(
                f"[{source}]aresample=48000,aformat=channel_layouts=stereo,"
                f"asetpts=PTS-STARTPTS[a{i}]"
            )

        video_acc = "v0"
        audio_acc = "a0"
        accumulated = included[0].duration
        transitions: List[Dict[str, Any]] = []

        for k in range(1, len(included)):
            segment = included[k]
            out_v = f"vx{k}"
            out_a = f"ax{k}"

            if crossfaded[k - 1]:
                offset = accumulated - fade
                filters.append(
                    f"[{video_acc}][v{k}]xfade=transition={transition.type.xfade_name}:"
                    f"duration={fade:.3f}:offset={offset:.3f}[{out_v}]"
                )
                if has_audio:
                    filters.append(f"[{audio_acc}][a{k}]acrossfade=d={fade:.3f}[{out_a}]")
                accumulated += segment.duration - fade
                transitions.append({
                    "after": included[k - 1].index,
                    "before": segment.index,
                    "type": transition.type.value,
                    "duration": fade,
                    "offset": round(offset, 3),
                })
            else:
                filters.append(f"[{video_acc}][v{k}]concat=n=2:v=1:a=0[{out_v}]")
                if has_audio:
                    filters.append(f"[{audio_acc}][a{k}]concat=n=2:v=0:a=1[{out_a}]")
                transitions.append({
                    "after": included[k - 1].index,
                    "before": segment.index,
                    "type": TransitionType.HARD_CUT.value,
                    "duration": 0.0,
                    "offset": round(accumulated, 3),
                })
                accumulated += segment.duration

            video_acc = out_v
            audio_acc = out_a

        maps = [f"[{video_acc}]"]
        output_args = profile.video_args()
        if has_audio:
            maps.append(f"[{audio_acc}]")
            output_args += profile.audio_args()
        else:
            output_args.append("-an")
        output_args += profile.container_args()

        invocation = EncodingInvocation(
            inputs=inputs,
            output_path=output_path,
            filter_graph=";".join(filters),
            maps=maps,
            output_args=output_args,
        )
        return StitchPlan(
            invocation=invocation,
            achieved_duration=round(accumulated, 6),
            transitions=transitions,
            discontinuities=discontinuities,
            has_audio=has_audio,
        )
