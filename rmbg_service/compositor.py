"""Merge an alpha mask into an image's alpha channel."""

from __future__ import annotations

import numpy as np

from .errors import DimensionMismatchError
from .imaging import ImageBuffer


def apply_mask(image: ImageBuffer, mask: np.ndarray) -> ImageBuffer:
    """
    Return a new RGBA buffer whose alpha channel is `mask`.

    `mask` holds one uint8 per pixel in row-major order, either flat or
    shaped `(height, width)`. RGB values are copied untouched, including
    under fully transparent pixels (straight alpha, no premultiplication).
    RGB inputs get an opaque alpha channel before the overwrite.
    """
    mask = np.asarray(mask)
    expected = image.width * image.height
    if mask.size != expected:
        raise DimensionMismatchError(
            f"Mask has {mask.size} values but image {image.width}x{image.height} has {expected} pixels",
            expected=expected,
            actual=int(mask.size),
        )

    if image.has_alpha:
        rgba = image.pixels.copy()
    else:
        alpha = np.full((image.height, image.width, 1), 255, dtype=np.uint8)
        rgba = np.concatenate((image.pixels, alpha), axis=2)

    rgba[..., 3] = mask.astype(np.uint8, copy=False).reshape(image.height, image.width)
    return ImageBuffer(pixels=rgba)
