"""
Media Probing
=============

ffprobe / ffmpeg helpers for reading stream metadata and grabbing single
frames. Every call runs the binary in a worker thread so waiting jobs keep
the event loop free.
"""

import asyncio
import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from ..core.exceptions import EncodingToolError, MissingArtifactError

logger = logging.getLogger(__name__)


# Subprocess timeout in seconds
SUBPROCESS_TIMEOUT = 60


@dataclass
class MediaInfo:
    """Stream metadata of a media file."""

    path: str
    duration: float
    has_audio: bool
    video_codec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    pix_fmt: Optional[str] = None
    profile: Optional[str] = None


def jpeg_qscale(quality: int) -> int:
    """Convert a 1-100 JPEG quality to ffmpeg's 2-31 q:v scale."""
    quality = max(1, min(100, quality))
    return max(2, int((100 - quality) / 3) + 1)


class MediaProbe:
    """Thin async wrapper around ffprobe and ffmpeg."""

    def __init__(
        self,
        ffprobe_path: str = "ffprobe",
        ffmpeg_path: str = "ffmpeg",
        timeout: int = SUBPROCESS_TIMEOUT,
    ):
        self.ffprobe_path = ffprobe_path
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    async def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        try:
            return await asyncio.to_thread(
                subprocess.run,
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise EncodingToolError(f"{cmd[0]} not found. Please install ffmpeg.")
        except subprocess.TimeoutExpired:
            raise EncodingToolError(f"{cmd[0]} timed out after {self.timeout}s")

    async def probe(self, path: Union[str, Path]) -> MediaInfo:
        """
        Read duration and stream information.

        Raises:
            MissingArtifactError: file absent or not decodable
        """
        path = Path(path)
        if not path.is_file():
            raise MissingArtifactError(f"Media file not found: {path}", artifact_path=str(path))

        result = await self._run([
            self.ffprobe_path, "-v", "error",
            "-show_entries", "format=duration:stream=codec_type,codec_name,width,height,pix_fmt,profile",
            "-of", "json",
            str(path),
        ])
        if result.returncode != 0:
            raise MissingArtifactError(
                f"ffprobe could not read {path}: {result.stderr.strip()[:300]}",
                artifact_path=str(path),
            )

        try:
            data = json.loads(result.stdout or "{}")
            duration = float(data.get("format", {}).get("duration", 0))
        except (ValueError, TypeError) as e:
            raise MissingArtifactError(f"Unreadable probe output for {path}: {e}", artifact_path=str(path))

        streams = data.get("streams") or []
        video = next((s for s in streams if s.get("codec_type") == "video"), {})
        return MediaInfo(
            path=str(path),
            duration=duration,
            has_audio=any(s.get("codec_type") == "audio" for s in streams),
            video_codec=video.get("codec_name"),
            width=video.get("width"),
            height=video.get("height"),
            pix_fmt=video.get("pix_fmt"),
            profile=video.get("profile"),
        )

    async def duration(self, path: Union[str, Path]) -> float:
        """Duration of a media file in seconds."""
        return (await self.probe(path)).duration

    async def grab_frame(
        self,
        video_path: Union[str, Path],
        timestamp: float,
        output_path: Union[str, Path],
        quality: int = 95,
    ) -> Path:
        """
        Write the frame at ``timestamp`` seconds to ``output_path``.

        Raises:
            MissingArtifactError: ffmpeg produced no image
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.unlink(missing_ok=True)

        cmd = [
            self.ffmpeg_path, "-y",
            "-ss", f"{timestamp:.3f}",
            "-i", str(video_path),
            "-frames:v", "1",
        ]
        if output_path.suffix.lower() in (".jpg", ".jpeg"):
            cmd += ["-q:v", str(jpeg_qscale(quality))]
        cmd.append(str(output_path))

        result = await self._run(cmd)

        if result.returncode != 0 or not output_path.is_file() or output_path.stat().st_size == 0:
            raise MissingArtifactError(
                f"No frame at {timestamp:.3f}s in {video_path}: {result.stderr.strip()[-300:]}",
                artifact_path=str(video_path),
            )

        logger.debug(f"Extracted frame at {timestamp:.3f}s to {output_path}")
        return output_path
