from io import BytesIO
from pathlib import Path
import threading
import time

import numpy as np
from PIL import Image
import pytest
import torch

from rmbg_service.config import Settings
from rmbg_service.model_loader import LoadedModel, SegmentationEngine
from rmbg_service.preprocessing import PreprocessorConfig

TEST_INPUT_SIZE = (32, 32)


class ConstantMatte(torch.nn.Module):
    """Stand-in network: RMBG-shaped output filled with one value."""

    def __init__(self, value: float):
        super().__init__()
        self.value = value
        self.calls = 0

    def forward(self, x):
        self.calls += 1
        b, _, h, w = x.shape
        matte = torch.full((b, 1, h, w), self.value)
        return [[matte, matte], [x]]


class LeftHalfMatte(torch.nn.Module):
    """Foreground on the left half of the frame, background on the right."""

    def forward(self, x):
        b, _, h, w = x.shape
        matte = torch.zeros((b, 1, h, w))
        matte[..., : w // 2] = 1.0
        return matte


class OverlapCountingMatte(torch.nn.Module):
    """Opaque matte that records how many forward passes ran at once."""

    def __init__(self, delay: float = 0.1):
        super().__init__()
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.calls = 0
        self._counter_lock = threading.Lock()

    def forward(self, x):
        with self._counter_lock:
            self.active += 1
            self.calls += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delay)
            b, _, h, w = x.shape
            return torch.ones((b, 1, h, w))
        finally:
            with self._counter_lock:
                self.active -= 1


class ExplodingModel(torch.nn.Module):
    def forward(self, x):
        raise RuntimeError("runtime exploded")


def make_loader(model, calls=None):
    def loader(settings):
        if calls is not None:
            calls.append(settings)
        return LoadedModel(
            model=model,
            preprocessor=PreprocessorConfig(size=TEST_INPUT_SIZE),
            device=torch.device("cpu"),
        )

    return loader


def random_rgb(width, height, seed=0):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)


def encode(array, fmt="PNG"):
    buf = BytesIO()
    Image.fromarray(array).save(buf, format=fmt)
    return buf.getvalue()


def decode_rgba(data):
    with Image.open(BytesIO(data)) as image:
        return np.array(image.convert("RGBA"))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        model_dir=tmp_path / "models",
        history_db_path=tmp_path / "history.db",
        autoload_model=False,
        store_original_in_history=True,
    )


@pytest.fixture
def opaque_engine(settings):
    engine = SegmentationEngine(settings=settings, loader=make_loader(ConstantMatte(1.0)))
    engine.initialize()
    return engine


@pytest.fixture
def half_engine(settings):
    engine = SegmentationEngine(settings=settings, loader=make_loader(LeftHalfMatte()))
    engine.initialize()
    return engine


@pytest.fixture
def image_file(tmp_path):
    """Write an image to disk and return its path."""

    def _make(name="photo.png", width=40, height=30, fmt="PNG", seed=0):
        path = Path(tmp_path) / name
        path.write_bytes(encode(random_rgb(width, height, seed), fmt=fmt))
        return path

    return _make
