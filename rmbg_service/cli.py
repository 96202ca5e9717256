"""
Command line entry point.

    rmbg-service remove photo.jpg other.png --output-dir ./output
    rmbg-service download
    rmbg-service serve --port 8000
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from . import config
from .errors import ModelDownloadError, ModelLoadError
from .model_download import download_model
from .model_loader import SegmentationEngine, load_segmentation_model
from .pipeline import process_images

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="rmbg-service", description="Remove image backgrounds with RMBG")
    sub = parser.add_subparsers(dest="command", required=True)

    remove = sub.add_parser("remove", help="Remove the background of one or more images")
    remove.add_argument("inputs", nargs="+", help="Input image paths (JPEG, PNG, WEBP)")
    remove.add_argument("--output-dir", default="./output", help="Directory for the RGBA PNG outputs")

    download = sub.add_parser("download", help="Fetch model files from the Hugging Face hub")
    download.add_argument("--force", action="store_true", help="Re-download files already on disk")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser.parse_args(argv)


def _remove(args: argparse.Namespace, settings: config.Settings) -> int:
    missing = [p for p in args.inputs if not Path(p).exists()]
    for path in missing:
        logger.error("Input file not found: %s", path)

    engine = SegmentationEngine(settings=settings, loader=load_segmentation_model)
    try:
        engine.initialize()
    except ModelLoadError as exc:
        logger.error("Cannot process images: %s", exc)
        return 1

    outputs = process_images(args.inputs, engine, output_dir=args.output_dir, settings=settings)
    print(f"Processed {len(outputs)}/{len(args.inputs)} images into {args.output_dir}")
    return 0 if outputs else 1


def _download(args: argparse.Namespace, settings: config.Settings) -> int:
    try:
        target = download_model(settings, force=args.force)
    except ModelDownloadError as exc:
        logger.error("%s", exc)
        return 1
    print(f"Model files are ready in {target}")
    return 0


def _serve(args: argparse.Namespace, settings: config.Settings) -> int:
    import uvicorn

    uvicorn.run("rmbg_service.api:app", host=args.host, port=args.port, log_level=settings.log_level.lower())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = config.get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    if args.command == "remove":
        return _remove(args, settings)
    if args.command == "download":
        return _download(args, settings)
    return _serve(args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
