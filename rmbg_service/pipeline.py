"""
High-level background removal pipeline.

`process_image` serves the HTTP API, the CLI and the batch queue alike:
file -> decode -> RMBG mask -> alpha merge -> RGBA PNG bytes.

Errors are never retried or swallowed here; callers decide what to do with
`ModelNotReadyError`, `DecodeError`, `InferenceError` and `EncodeError`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

from . import config
from .compositor import apply_mask
from .imaging import ImageBuffer, decode_image, encode_png
from .model_loader import SegmentationEngine
from .postprocessing import refine_mask

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def output_filename(source_path: PathLike, suffix: str = "-no-bg") -> str:
    """`photo.jpg` -> `photo-no-bg.png`."""
    return f"{Path(source_path).stem}{suffix}.png"


def _write_output(png_bytes: bytes, output_path: PathLike) -> None:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(png_bytes)
    logger.info("Saved processed image to %s", output_path)


def _remove_background(image: ImageBuffer, engine: SegmentationEngine, settings: config.Settings) -> bytes:
    mask = engine.predict(image)
    if settings.refine_mask:
        mask = refine_mask(mask, settings=settings)
    return encode_png(apply_mask(image, mask))


def process_image(
    source_path: PathLike,
    engine: SegmentationEngine,
    output_path: Optional[PathLike] = None,
    settings: Optional[config.Settings] = None,
) -> bytes:
    """
    Remove the background of the image at `source_path`.

    Returns RGBA PNG bytes with the source's width and height, and writes
    them to `output_path` when given.
    """
    settings = settings or config.get_settings()
    engine.ensure_ready()

    image = decode_image(Path(source_path))
    logger.info("Processing image: %s (%dx%d)", Path(source_path).name, image.width, image.height)

    png_bytes = _remove_background(image, engine, settings)
    if output_path is not None:
        _write_output(png_bytes, output_path)
    return png_bytes


def process_image_bytes(
    image_bytes: bytes,
    engine: SegmentationEngine,
    settings: Optional[config.Settings] = None,
) -> bytes:
    """Same as `process_image` for an in-memory encoded image."""
    settings = settings or config.get_settings()
    engine.ensure_ready()
    image = decode_image(image_bytes)
    return _remove_background(image, engine, settings)


def process_images(
    source_paths: Iterable[PathLike],
    engine: SegmentationEngine,
    output_dir: Optional[PathLike] = None,
    settings: Optional[config.Settings] = None,
) -> List[bytes]:
    """
    Process several images, skipping the ones that fail.

    Returns the PNG bytes of every successful image in input order. With
    `output_dir`, each result is also written as `<stem>-no-bg.png`.
    """
    settings = settings or config.get_settings()
    source_paths = list(source_paths)
    logger.info("Processing %d images", len(source_paths))

    if output_dir is not None:
        Path(output_dir).mkdir(parents=True, exist_ok=True)

    outputs: List[bytes] = []
    for source_path in source_paths:
        output_path = (
            Path(output_dir) / output_filename(source_path, settings.output_suffix) if output_dir is not None else None
        )
        try:
            outputs.append(process_image(source_path, engine, output_path=output_path, settings=settings))
        except Exception as exc:  # noqa: BLE001
            logger.error("Error processing %s: %s", Path(source_path).name, exc)
            continue
        logger.info("Successfully processed: %s", Path(source_path).name)

    logger.info("Processing complete: %d/%d successful", len(outputs), len(source_paths))
    return outputs
