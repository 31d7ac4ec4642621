"""Byte-level bad-image detection with Pillow."""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image, ImageStat, UnidentifiedImageError

LOGGER = logging.getLogger(__name__)

CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
}


def sniff_extension(data: bytes) -> Optional[str]:
    """Detect the image format from magic bytes."""
    if data[:3] == b"\xff\xd8\xff":
        return "jpg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    if data[:4] == b"GIF8":
        return "gif"
    return None


@dataclass(frozen=True)
class Inspection:
    """Result of inspecting downloaded bytes."""

    extension: Optional[str]
    width: int = 0
    height: int = 0
    byte_size: int = 0
    stddev: float = 0.0
    reason: Optional[str] = None

    @property
    def bad(self) -> bool:
        return self.reason is not None


class BadImageDetector:
    """Reject undecodable, tiny or flat (placeholder-like) images."""

    def __init__(self, min_side_px: int = 200, min_bytes: int = 5000, min_stddev: float = 4.0) -> None:
        self.min_side_px = min_side_px
        self.min_bytes = min_bytes
        self.min_stddev = min_stddev

    def inspect(self, data: bytes) -> Inspection:
        """Decode ``data`` and apply size and variance thresholds.

        Parameters
        ----------
        data : bytes
            Downloaded image payload

        Returns
        -------
        Inspection
            Dimensions and a rejection reason, if any
        """
        size = len(data)
        extension = sniff_extension(data)
        if extension is None:
            return Inspection(extension=None, byte_size=size, reason="unknown_format")

        try:
            with Image.open(io.BytesIO(data)) as image:
                width, height = image.size
                gray = image.convert("L")
                gray.thumbnail((256, 256))
                stddev = ImageStat.Stat(gray).stddev[0]
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
            LOGGER.debug("Could not decode %d-byte %s: %s", size, extension, exc)
            return Inspection(extension=extension, byte_size=size, reason="undecodable")

        reason = None
        if min(width, height) < self.min_side_px:
            reason = "too_small"
        elif size < self.min_bytes:
            reason = "tiny_payload"
        elif stddev < self.min_stddev:
            reason = "low_variance"

        return Inspection(
            extension=extension,
            width=width,
            height=height,
            byte_size=size,
            stddev=stddev,
            reason=reason,
        )
