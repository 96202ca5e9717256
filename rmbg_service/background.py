"""
Replace the transparent background of a cutout.

The foreground is always laid at (0, 0) over a canvas of its exact size:
a solid color, or a background image scaled and centre-cropped to cover it.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from io import BytesIO
import logging
from pathlib import Path
from typing import Any, Dict, Tuple, Union

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import CompositeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransparentBackground:
    pass


@dataclass(frozen=True)
class ColorBackground:
    color: str  # "#RRGGBB"


@dataclass(frozen=True)
class ImageBackground:
    image_bytes: bytes


BackgroundSpec = Union[TransparentBackground, ColorBackground, ImageBackground]


def parse_hex_color(value: str) -> Tuple[int, int, int]:
    raw = (value or "").strip()
    if raw.startswith("#"):
        raw = raw[1:]
    if len(raw) != 6:
        raise CompositeError(f"Invalid color {value!r}, expected #RRGGBB")
    try:
        return (int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16))
    except ValueError as exc:
        raise CompositeError(f"Invalid color {value!r}, expected #RRGGBB") from exc


def decode_data_url(value: str) -> bytes:
    """Accept `data:image/...;base64,...` or bare base64."""
    if value.startswith("data:"):
        _, _, value = value.partition(",")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CompositeError("Image data is not valid base64") from exc


def background_from_payload(payload: Dict[str, Any]) -> BackgroundSpec:
    """Parse the tagged wire form `{type: transparent|color|image, ...}`."""
    kind = payload.get("type")
    if kind == "transparent":
        return TransparentBackground()
    if kind == "color":
        color = payload.get("color")
        if not color:
            raise CompositeError("Color background needs a 'color'")
        parse_hex_color(color)
        return ColorBackground(color=color)
    if kind == "image":
        data = payload.get("imageData")
        if not data:
            raise CompositeError("Image background needs 'imageData'")
        return ImageBackground(image_bytes=decode_data_url(data))
    raise CompositeError(f"Unknown background type {kind!r}")


def _open_rgba(data: bytes, what: str) -> Image.Image:
    try:
        with Image.open(BytesIO(data)) as image:
            image.load()
            return image.convert("RGBA")
    except (OSError, SyntaxError, UnidentifiedImageError, ValueError, Image.DecompressionBombError) as exc:
        raise CompositeError(f"Could not decode {what}: {exc}") from exc


def _encode(image: Image.Image) -> bytes:
    buf = BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def composite_over_color(transparent_png: bytes, color: str) -> bytes:
    """Flatten the cutout onto a solid `#RRGGBB` color."""
    foreground = _open_rgba(transparent_png, "foreground image")
    rgb = parse_hex_color(color)
    canvas = Image.new("RGBA", foreground.size, rgb + (255,))
    canvas.alpha_composite(foreground, dest=(0, 0))
    logger.debug("Composited %dx%d over color %s", foreground.width, foreground.height, color)
    return _encode(canvas.convert("RGB"))


def composite_over_image(transparent_png: bytes, background_bytes: bytes) -> bytes:
    """
    Lay the cutout over a background image cropped to cover it.

    The result stays RGBA: areas where both layers are transparent remain
    transparent.
    """
    foreground = _open_rgba(transparent_png, "foreground image")
    background = _open_rgba(background_bytes, "background image")
    canvas = ImageOps.fit(background, foreground.size, method=Image.LANCZOS, centering=(0.5, 0.5))
    canvas.alpha_composite(foreground, dest=(0, 0))
    logger.debug(
        "Composited %dx%d over %dx%d background image",
        foreground.width,
        foreground.height,
        background.width,
        background.height,
    )
    return _encode(canvas)


def composite_with_background(image_bytes: bytes, spec: BackgroundSpec, output_path: Union[str, Path]) -> None:
    """Render `image_bytes` with `spec` and write the PNG to `output_path`."""
    if isinstance(spec, TransparentBackground):
        out = image_bytes
    elif isinstance(spec, ColorBackground):
        out = composite_over_color(image_bytes, spec.color)
    elif isinstance(spec, ImageBackground):
        out = composite_over_image(image_bytes, spec.image_bytes)
    else:
        raise CompositeError(f"Unsupported background spec {type(spec).__name__}")

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(out)
    logger.info("Saved image with %s to %s", type(spec).__name__, output_path)
