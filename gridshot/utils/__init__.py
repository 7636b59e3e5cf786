"""Utility functions for image handling."""

from .image_utils import (
    ImagePayload,
    compress_image,
    flatten_alpha,
    guess_mime_type,
    images_equal,
    save_payload,
)

__all__ = [
    "ImagePayload",
    "compress_image",
    "flatten_alpha",
    "guess_mime_type",
    "images_equal",
    "save_payload",
]
