"""
Image preprocessing for RMBG.

The segmentation network runs at a fixed input resolution, so every image
is resized to `size`, rescaled to [0, 1] and normalized per channel before
inference. Values mirror the model's `preprocessor_config.json`.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np
from PIL import Image
import torch

from .errors import ModelLoadError
from .imaging import ImageBuffer

logger = logging.getLogger(__name__)

PREPROCESSOR_CONFIG_FILENAME = "preprocessor_config.json"

# The published RMBG-1.4 config ships image_std=1; the network expects [-1, 1] inputs.
RMBG_PREPROCESSOR_OVERRIDES: Dict[str, Any] = {
    "do_normalize": True,
    "do_rescale": True,
    "do_resize": True,
    "image_mean": [0.5, 0.5, 0.5],
    "image_std": [0.5, 0.5, 0.5],
    "resample": 2,
    "rescale_factor": 1.0 / 255.0,
    "size": {"width": 1024, "height": 1024},
}


@dataclass(frozen=True)
class PreprocessorConfig:
    size: Tuple[int, int] = (1024, 1024)  # (width, height)
    image_mean: Tuple[float, float, float] = (0.5, 0.5, 0.5)
    image_std: Tuple[float, float, float] = (0.5, 0.5, 0.5)
    rescale_factor: float = 1.0 / 255.0
    resample: int = Image.BILINEAR
    do_resize: bool = True
    do_rescale: bool = True
    do_normalize: bool = True

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PreprocessorConfig":
        defaults = cls()
        size = raw.get("size", None)
        if isinstance(size, dict):
            size = (int(size["width"]), int(size["height"]))
        elif isinstance(size, (list, tuple)):
            size = (int(size[0]), int(size[1]))
        elif isinstance(size, int):
            size = (size, size)
        else:
            size = defaults.size
        if size[0] <= 0 or size[1] <= 0:
            raise ValueError(f"size must be positive, got {size}")

        mean = tuple(float(v) for v in raw.get("image_mean", defaults.image_mean))
        std = tuple(float(v) for v in raw.get("image_std", defaults.image_std))
        if len(mean) != 3 or len(std) != 3:
            raise ValueError("image_mean and image_std need exactly 3 values")
        if any(s == 0 for s in std):
            raise ValueError("image_std values must be non-zero")

        return cls(
            size=size,
            image_mean=mean,  # type: ignore[arg-type]
            image_std=std,  # type: ignore[arg-type]
            rescale_factor=float(raw.get("rescale_factor", defaults.rescale_factor)),
            resample=int(raw.get("resample", defaults.resample)),
            do_resize=bool(raw.get("do_resize", defaults.do_resize)),
            do_rescale=bool(raw.get("do_rescale", defaults.do_rescale)),
            do_normalize=bool(raw.get("do_normalize", defaults.do_normalize)),
        )


def load_preprocessor_config(
    model_dir: Path, overrides: Optional[Dict[str, Any]] = None
) -> PreprocessorConfig:
    """
    Read `preprocessor_config.json` from the model directory.

    `overrides` win over the file. A missing file means defaults; an
    unreadable one is a model load failure.
    """
    path = model_dir / PREPROCESSOR_CONFIG_FILENAME
    raw: Dict[str, Any] = {}
    try:
        if path.exists():
            raw = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("expected a JSON object")
        else:
            logger.info("No %s in %s, using default preprocessing", PREPROCESSOR_CONFIG_FILENAME, model_dir)
        raw.update(overrides or {})
        return PreprocessorConfig.from_dict(raw)
    except (OSError, ValueError, KeyError, TypeError) as exc:
        raise ModelLoadError(f"Malformed preprocessor config {path}: {exc}", model_path=str(path)) from exc


def preprocess_image(image: ImageBuffer, preprocessor: PreprocessorConfig, device: torch.device) -> torch.Tensor:
    """
    Turn an image buffer into a `(1, 3, H, W)` float tensor on `device`.

    Alpha is dropped: the network only sees RGB.
    """
    rgb = image.pixels[..., :3]
    if preprocessor.do_resize and (image.width, image.height) != preprocessor.size:
        resized = Image.fromarray(np.ascontiguousarray(rgb)).resize(
            preprocessor.size, resample=preprocessor.resample
        )
        im_np = np.asarray(resized).astype("float32")
    else:
        im_np = rgb.astype("float32")

    if preprocessor.do_rescale:
        im_np = im_np * preprocessor.rescale_factor
    if preprocessor.do_normalize:
        mean = np.asarray(preprocessor.image_mean, dtype="float32")
        std = np.asarray(preprocessor.image_std, dtype="float32")
        im_np = (im_np - mean) / std
    im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW

    return torch.from_numpy(np.ascontiguousarray(im_np)).unsqueeze(0).to(device)
