"""
Model loading and inference for RMBG.

`SegmentationEngine` owns the lifecycle of one loaded model and its
preprocessor:
 - `initialize()` loads once; concurrent callers share the in-flight load,
 - `predict()` turns an image into a uint8 alpha mask at source resolution,
 - the loaded model is never mutated after it becomes ready.

Hosts build a single engine at startup and hand it to the pipeline and
batch queue.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional

import numpy as np
import torch
import torch.nn.functional as F

from . import config
from .errors import InferenceError, ModelLoadError, ModelNotReadyError
from .imaging import ImageBuffer
from .preprocessing import (
    RMBG_PREPROCESSOR_OVERRIDES,
    PreprocessorConfig,
    load_preprocessor_config,
    preprocess_image,
)

logger = logging.getLogger(__name__)


class ModelState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class LoadedModel:
    model: Callable[[torch.Tensor], Any]
    preprocessor: PreprocessorConfig
    device: torch.device


ModelLoader = Callable[[config.Settings], LoadedModel]


def _try_load_torchscript(model_path: Path, device: torch.device) -> torch.nn.Module:
    """Load a TorchScript export of the network."""
    model = torch.jit.load(str(model_path), map_location=device)
    model.eval()
    return model


def _load_pretrained(model_dir: Path, device: torch.device) -> torch.nn.Module:
    """Load the Hugging Face checkpoint (custom BriaRMBG code) from a local directory."""
    from transformers import AutoModelForImageSegmentation

    model = AutoModelForImageSegmentation.from_pretrained(
        str(model_dir),
        trust_remote_code=True,
        local_files_only=True,
    )
    model.to(device)
    model.eval()
    return model


def load_segmentation_model(settings: config.Settings) -> LoadedModel:
    """
    Load weights + preprocessor config from `settings.model_path`.

    A TorchScript file is preferred when present; otherwise the directory is
    treated as a Hugging Face checkpoint.
    """
    model_path = settings.model_path
    if not model_path.exists():
        raise ModelLoadError(f"Model files not found at {model_path}", model_path=str(model_path))

    device = torch.device(settings.model_device)
    model_dir = model_path if model_path.is_dir() else model_path.parent
    preprocessor = load_preprocessor_config(model_dir, overrides=RMBG_PREPROCESSOR_OVERRIDES)

    scripted = model_path if model_path.is_file() else model_path / settings.torchscript_filename
    try:
        if scripted.is_file():
            logger.info("Loading TorchScript model from %s", scripted)
            model = _try_load_torchscript(scripted, device)
        else:
            logger.info("Loading pretrained model from %s", model_dir)
            model = _load_pretrained(model_dir, device)
    except Exception as exc:  # noqa: BLE001
        raise ModelLoadError(f"Failed to load model from {model_path}: {exc}", model_path=str(model_path)) from exc

    return LoadedModel(model=model, preprocessor=preprocessor, device=device)


def _extract_matte(output: Any) -> torch.Tensor:
    """
    Pull the foreground matte out of a model output as a `(1, 1, h, w)` tensor.

    RMBG returns `[[d1, d2, ...], [features...]]` where `d1` is the final
    sigmoid matte; TorchScript exports usually return the tensor directly.
    """
    while isinstance(output, (list, tuple)):
        if not output:
            raise ValueError("model returned an empty output")
        output = output[0]
    if isinstance(output, dict):
        output = output.get("logits", output.get("output"))
    if not isinstance(output, torch.Tensor):
        raise ValueError(f"unexpected model output type {type(output).__name__}")

    if output.dim() == 2:
        output = output[None, None]
    elif output.dim() == 3:
        output = output[None]
    elif output.dim() != 4:
        raise ValueError(f"unexpected matte shape {tuple(output.shape)}")
    return output[:1, :1].float()


class SegmentationEngine:
    """Explicit handle around the single shared segmentation model."""

    def __init__(self, settings: Optional[config.Settings] = None, loader: Optional[ModelLoader] = None):
        self._settings = settings or config.get_settings()
        self._loader = loader or load_segmentation_model
        self._lock = Lock()
        self._infer_lock = Lock()
        self._state = ModelState.UNINITIALIZED
        self._loaded: Optional[LoadedModel] = None
        self._pending: Optional[Future] = None
        self._error: Optional[ModelLoadError] = None

    @property
    def model_id(self) -> str:
        return self._settings.model_id

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def error(self) -> Optional[ModelLoadError]:
        return self._error

    @property
    def is_ready(self) -> bool:
        return self._state is ModelState.READY

    def get_model_info(self) -> Dict[str, str]:
        return {"modelId": self.model_id}

    def initialize(self) -> None:
        """
        Load the model once.

        Returns immediately when ready. While a load is in flight, callers
        wait on it instead of starting another. A failed load raises
        `ModelLoadError` for the loader and every waiter; calling again
        retries.
        """
        with self._lock:
            if self._state is ModelState.READY:
                return
            pending = self._pending
            owner = pending is None
            if owner:
                pending = Future()
                self._pending = pending
                self._state = ModelState.LOADING
                self._error = None

        if not owner:
            pending.result()
            return

        logger.info("Loading segmentation model %s", self.model_id)
        try:
            loaded = self._loader(self._settings)
        except Exception as exc:  # noqa: BLE001
            error = exc if isinstance(exc, ModelLoadError) else ModelLoadError(str(exc))
            with self._lock:
                self._state = ModelState.FAILED
                self._error = error
                self._pending = None
            logger.error("Model %s failed to load: %s", self.model_id, error)
            pending.set_exception(error)
            if error is exc:
                raise
            raise error from exc

        with self._lock:
            self._loaded = loaded
            self._state = ModelState.READY
            self._pending = None
        logger.info("Model %s ready on device: %s", self.model_id, loaded.device)
        pending.set_result(None)

    def initialize_in_background(self) -> Future:
        """Start `initialize()` on a worker thread so hosts stay responsive."""
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-init")
        try:
            return executor.submit(self.initialize)
        finally:
            executor.shutdown(wait=False)

    def ensure_ready(self) -> LoadedModel:
        loaded = self._loaded
        if self._state is ModelState.READY and loaded is not None:
            return loaded
        if self._state is ModelState.FAILED:
            raise ModelNotReadyError(f"Model {self.model_id} failed to load: {self._error}")
        raise ModelNotReadyError(f"Model {self.model_id} is not ready (state: {self._state.value})")

    def predict(self, image: ImageBuffer) -> np.ndarray:
        """
        Return a `(height, width)` uint8 alpha mask for `image`.

        The network runs at its fixed input size; the matte is resized back
        to the source resolution before it is returned. Forward passes on
        one engine run one at a time.
        """
        loaded = self.ensure_ready()
        tensor = preprocess_image(image, loaded.preprocessor, loaded.device)

        try:
            with self._infer_lock, torch.no_grad():
                output = loaded.model(tensor)
            matte = _extract_matte(output)
            matte = F.interpolate(
                matte,
                size=(image.height, image.width),
                mode="bilinear",
                align_corners=False,
            )
        except Exception as exc:  # noqa: BLE001
            raise InferenceError(f"Inference failed: {exc}") from exc

        alpha = np.clip(matte[0, 0].detach().cpu().numpy(), 0.0, 1.0)
        return np.clip(alpha * 255.0, 0, 255).astype(np.uint8)
