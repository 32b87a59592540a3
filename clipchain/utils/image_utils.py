"""
Image Utilities
===============

Helper functions for image processing.
"""

import logging
from pathlib import Path
from typing import Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError

from ..core.exceptions import MissingArtifactError

logger = logging.getLogger(__name__)


MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "video/mp4": ".mp4",
}


def extension_for_mime(mime_type: Optional[str], default: str = ".png") -> str:
    """File extension for a MIME type reported by a service."""
    if not mime_type:
        return default
    return MIME_EXTENSIONS.get(mime_type.split(";")[0].strip().lower(), default)


def get_image_dimensions(image_path: Union[str, Path]) -> Tuple[int, int]:
    """
    Get the dimensions of an image, verifying that it decodes.

    Args:
        image_path: Path to image file

    Returns:
        Tuple of (width, height)

    Raises:
        MissingArtifactError: if the file is absent or not a readable image
    """
    try:
        with Image.open(image_path) as img:
            img.verify()
            return img.size
    except FileNotFoundError:
        raise MissingArtifactError(f"Image not found: {image_path}", artifact_path=str(image_path))
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise MissingArtifactError(f"Unreadable image {image_path}: {e}", artifact_path=str(image_path))
