"""
Fetch RMBG model files from the Hugging Face hub.

Files land in `settings.model_dir / settings.model_id`, which is where
`load_segmentation_model` looks for them.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional

import requests

from . import config
from .errors import ModelDownloadError

logger = logging.getLogger(__name__)

MODEL_FILES = (
    "config.json",
    "preprocessor_config.json",
    "MyConfig.py",
    "briarmbg.py",
    "model.safetensors",
)

_CHUNK_SIZE = 1 << 20


def file_url(settings: config.Settings, filename: str) -> str:
    base = settings.model_download_base_url.rstrip("/")
    return f"{base}/{settings.model_id}/resolve/{settings.model_revision}/{filename}"


def _download_file(session: requests.Session, url: str, dest: Path, timeout: int) -> None:
    tmp = dest.with_name(dest.name + ".part")
    logger.info("Downloading %s", url)
    try:
        with session.get(url, stream=True, timeout=(5, timeout)) as resp:
            if resp.status_code != 200:
                raise ModelDownloadError(f"Failed to download {url}: HTTP {resp.status_code}", url=url)
            with open(tmp, "wb") as fh:
                for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                    if chunk:
                        fh.write(chunk)
        tmp.replace(dest)
    except requests.RequestException as exc:
        raise ModelDownloadError(f"Failed to download {url}: {exc}", url=url) from exc
    finally:
        if tmp.exists():
            tmp.unlink()
    logger.info("Saved to %s", dest)


def download_model(
    settings: Optional[config.Settings] = None,
    session: Optional[requests.Session] = None,
    files: Iterable[str] = MODEL_FILES,
    force: bool = False,
) -> Path:
    """Download the model files, skipping ones already on disk unless `force`."""
    settings = settings or config.get_settings()
    target = settings.model_path
    target.mkdir(parents=True, exist_ok=True)

    owns_session = session is None
    session = session or requests.Session()
    try:
        for filename in files:
            dest = target / filename
            if dest.exists() and not force:
                logger.info("Skipping %s, already present", dest)
                continue
            dest.parent.mkdir(parents=True, exist_ok=True)
            _download_file(session, file_url(settings, filename), dest, settings.request_timeout_seconds)
    finally:
        if owns_session:
            session.close()

    logger.info("Model files are ready in %s", target)
    return target
