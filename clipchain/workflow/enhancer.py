"""
Enhancement Pass
================

Optional post-processing of the stitched video. The shipped enhancer
upscales with a lanczos filter and re-encodes under the compatibility
baseline, so the final output stays playable everywhere the stitched one
was.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..utils.media import MediaProbe
from .stitcher import (
    COMPATIBILITY_BASELINE,
    EncodingInput,
    EncodingInvocation,
    EncodingProfile,
    EncodingTool,
)

logger = logging.getLogger(__name__)


@dataclass
class EnhancementResult:
    path: str
    cost: float = 0.0
    width: Optional[int] = None
    height: Optional[int] = None


class Enhancer(ABC):
    """Post-processing step applied to a finished video."""

    @abstractmethod
    async def enhance(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
    ) -> EnhancementResult:
        """Write an enhanced copy of ``input_path`` to ``output_path``."""


class FfmpegUpscaleEnhancer(Enhancer):
    """
    Lanczos upscale to a target height.

    Args:
        tool: Encoding tool that runs the invocation
        probe: Probe used to read the input's duration and size
        target_height: Output height in pixels (width keeps the aspect ratio)
        price_per_minute: Processing cost per minute of input
        profile: Tunables (crf/preset) applied on top of the baseline
    """

    def __init__(
        self,
        tool: EncodingTool,
        probe: MediaProbe,
        target_height: int = 1080,
        price_per_minute: float = 0.0,
        profile: Optional[EncodingProfile] = None,
    ):
        self.tool = tool
        self.probe = probe
        self.target_height = target_height
        self.price_per_minute = price_per_minute
        self.profile, _ = (profile or COMPATIBILITY_BASELINE).enforce_baseline()

    async def enhance(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
    ) -> EnhancementResult:
        info = await self.probe.probe(input_path)

        output_args = self.profile.video_args()
        maps = ["[v]"]
        if info.has_audio:
            maps.append("0:a")
            output_args += ["-c:a", "copy"]
        else:
            output_args.append("-an")
        output_args += self.profile.container_args()

        invocation = EncodingInvocation(
            inputs=[EncodingInput(str(input_path))],
            output_path=str(output_path),
            # -2 keeps the width even, which yuv420p requires
            filter_graph=(
                f"[0:v]scale=-2:{self.target_height}:flags=lanczos,"
                f"format={self.profile.pix_fmt}[v]"
            ),
            maps=maps,
            output_args=output_args,
        )

        logger.info(f"Upscaling {Path(input_path).name} from {info.height}p to {self.target_height}p")
        written = await self.tool.encode(invocation)

        cost = round(self.price_per_minute * info.duration / 60.0, 4)
        return EnhancementResult(path=str(written), cost=cost, height=self.target_height)
