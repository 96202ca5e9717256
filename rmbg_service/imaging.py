"""
Image decode/encode helpers.

Every pipeline works on an `ImageBuffer`: a raw `(height, width, channels)`
uint8 array with 3 (RGB) or 4 (RGBA) channels.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from pathlib import Path
from typing import Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import DecodeError, EncodeError

logger = logging.getLogger(__name__)

ImageSource = Union[str, Path, bytes]


@dataclass(frozen=True)
class ImageBuffer:
    pixels: np.ndarray  # (H, W, C) uint8

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] not in (3, 4):
            raise ValueError(f"ImageBuffer expects (H, W, 3|4) pixels, got shape {self.pixels.shape}")
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"ImageBuffer expects uint8 pixels, got {self.pixels.dtype}")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def has_alpha(self) -> bool:
        return self.channels == 4

    @classmethod
    def from_pil(cls, image: Image.Image) -> "ImageBuffer":
        if image.mode in _WIDE_GRAY_MODES:
            image = _to_8bit_gray(image)
        if image.mode not in ("RGB", "RGBA"):
            image = image.convert("RGBA" if _has_transparency(image) else "RGB")
        return cls(pixels=np.array(image, dtype=np.uint8))

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.pixels)


# 16-bit grayscale PNGs open in one of these; `convert` clips them instead of scaling
_WIDE_GRAY_MODES = ("I;16", "I;16L", "I;16B", "I;16N", "I")


def _to_8bit_gray(image: Image.Image) -> Image.Image:
    wide = np.clip(np.asarray(image, dtype=np.int64), 0, 65535)
    return Image.fromarray((wide // 257).astype(np.uint8))


def _has_transparency(image: Image.Image) -> bool:
    if image.mode in ("RGBA", "LA", "PA"):
        return True
    return image.mode == "P" and "transparency" in image.info


def _describe(source: ImageSource) -> str:
    if isinstance(source, bytes):
        return f"<{len(source)} bytes>"
    return str(source)


def decode_image(source: ImageSource) -> ImageBuffer:
    """
    Decode a JPEG/PNG/WEBP file (or raw bytes) into an `ImageBuffer`.

    Images with transparency decode to RGBA, everything else to RGB.
    """
    label = _describe(source)
    try:
        if isinstance(source, bytes):
            image = Image.open(BytesIO(source))
        else:
            image = Image.open(Path(source))
        with image:
            image.load()
            buffer = ImageBuffer.from_pil(image)
    except (OSError, SyntaxError, UnidentifiedImageError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Could not decode image {label}: {exc}", source=label) from exc

    logger.debug("Decoded %s (%dx%d, %d channels)", label, buffer.width, buffer.height, buffer.channels)
    return buffer


def encode_png(buffer: ImageBuffer) -> bytes:
    """Encode an RGB/RGBA buffer as PNG bytes."""
    try:
        out = buffer.to_pil()
        buf = BytesIO()
        out.save(buf, format="PNG")
    except (OSError, ValueError) as exc:
        raise EncodeError(f"PNG encode failed: {exc}") from exc
    return buf.getvalue()


def image_size(png_bytes: bytes) -> tuple[int, int]:
    """Return `(width, height)` of encoded image bytes without a full decode."""
    with Image.open(BytesIO(png_bytes)) as image:
        return image.size
