"""
Storage Utilities
=================

Per-job directory layout and metadata persistence.

Layout of one job directory::

    <base_path>/<job_id>/
        reference.png
        segment_000.mp4
        segment_000_last.jpg
        ...
        stitched.mp4
        final.mp4          (only when the enhancement pass ran)
        manifest.json
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, Union

from ..core.security import PathValidator, sanitize_filename

logger = logging.getLogger(__name__)


class JobLayout:
    """File names for every artifact of one job."""

    def __init__(
        self,
        base_path: Union[str, Path],
        job_id: str,
        manifest_name: str = "manifest.json",
        frame_format: str = "jpg",
    ):
        self.job_id = job_id
        self.frame_format = frame_format
        self._validator = PathValidator(base_path)
        self.root = self._validator.validate(sanitize_filename(job_id))
        self.manifest_name = manifest_name

    def ensure(self) -> "JobLayout":
        self.root.mkdir(parents=True, exist_ok=True)
        return self

    def reference_image(self, extension: str = ".png") -> Path:
        return self.root / f"reference{extension}"

    def segment_video(self, index: int) -> Path:
        return self.root / f"segment_{index:03d}.mp4"

    def segment_frame(self, index: int, position: str = "last") -> Path:
        return self.root / f"segment_{index:03d}_{position}.{self.frame_format}"

    @property
    def stitched(self) -> Path:
        return self.root / "stitched.mp4"

    @property
    def final(self) -> Path:
        return self.root / "final.mp4"

    @property
    def manifest(self) -> Path:
        return self.root / self.manifest_name


def save_metadata(
    metadata: Dict[str, Any],
    output_path: Union[str, Path],
) -> str:
    """
    Atomically save metadata as JSON.

    Args:
        metadata: Metadata dictionary
        output_path: Path to save the metadata

    Returns:
        Path to saved metadata
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    payload = dict(metadata)
    payload["saved_at"] = datetime.now().isoformat()

    tmp_path = output_path.with_name(output_path.name + ".tmp")
    with open(tmp_path, "w") as f:
        json.dump(payload, f, indent=2, default=str)
    os.replace(tmp_path, output_path)

    logger.debug(f"Metadata saved to {output_path}")
    return str(output_path)


def load_metadata(
    path: Union[str, Path],
) -> Optional[Dict[str, Any]]:
    """
    Load metadata from a JSON file.

    Returns:
        Metadata dictionary, or None if the file does not exist
    """
    path = Path(path)

    if not path.exists():
        return None

    with open(path, "r") as f:
        return json.load(f)
