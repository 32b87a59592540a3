"""
Utilities
=========

Helper functions for media probing, images and job storage.
"""

from .image_utils import extension_for_mime, get_image_dimensions
from .media import MediaInfo, MediaProbe
from .storage import JobLayout, save_metadata, load_metadata

__all__ = [
    "extension_for_mime",
    "get_image_dimensions",
    "MediaInfo",
    "MediaProbe",
    "JobLayout",
    "save_metadata",
    "load_metadata",
]
