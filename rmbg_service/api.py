"""
FastAPI layer exposing background removal to a local desktop shell.

Endpoints:
 - GET /health, GET /model/info, POST /model/init
 - POST /remove-bg, POST /remove-bg/batch, POST /composite
 - /queue: enqueue, inspect, process, stop, retry, remove, clear completed
 - /history: list, search, count, fetch, delete, clear

Images travel as `data:image/png;base64,...` strings.
"""

from __future__ import annotations

import base64
from contextlib import asynccontextmanager
from functools import partial
import logging
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel

from . import config
from .background import background_from_payload, composite_with_background, decode_data_url
from .batch import BatchQueue, QueueItem
from .errors import (
    BatchAlreadyRunningError,
    CompositeError,
    DecodeError,
    EncodeError,
    InferenceError,
    InvalidTransitionError,
    ModelLoadError,
    ModelNotReadyError,
)
from .history import HistoryRecord, HistoryStore
from .model_loader import SegmentationEngine
from .pipeline import process_image, process_images

logger = logging.getLogger(__name__)


def to_data_url(png_bytes: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(png_bytes).decode('ascii')}"


class RemoveBgRequest(BaseModel):
    path: str
    outputPath: Optional[str] = None


class RemoveBgResponse(BaseModel):
    data: str
    historyId: Optional[int] = None


class BatchRequest(BaseModel):
    paths: List[str]
    outputDir: Optional[str] = None


class BatchResponse(BaseModel):
    results: List[str]
    processed: int
    total: int


class CompositeRequest(BaseModel):
    imageData: str
    background: Dict[str, Any]
    outputPath: str


class EnqueueRequest(BaseModel):
    paths: List[str]


class QueueItemOut(BaseModel):
    id: str
    sourcePath: str
    name: str
    size: Optional[int] = None
    status: str
    progress: int
    result: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_item(cls, item: QueueItem) -> "QueueItemOut":
        return cls(
            id=item.id,
            sourcePath=item.source_path,
            name=item.name,
            size=item.size,
            status=item.status.value,
            progress=item.progress,
            result=to_data_url(item.result) if item.result is not None else None,
            error=item.error,
        )


class QueueResponse(BaseModel):
    items: List[QueueItemOut]
    progress: float
    running: bool


class HistoryRecordOut(BaseModel):
    id: int
    originalPath: str
    originalName: str
    originalData: Optional[str] = None
    processedData: str
    timestamp: int

    @classmethod
    def from_record(cls, record: HistoryRecord) -> "HistoryRecordOut":
        return cls(
            id=record.id,
            originalPath=record.original_path,
            originalName=record.original_name,
            originalData=_original_data_url(record),
            processedData=to_data_url(record.processed_data),
            timestamp=record.timestamp,
        )


def _original_data_url(record: HistoryRecord) -> Optional[str]:
    if record.original_data is None:
        return None
    suffix = Path(record.original_name).suffix.lower()
    mime = {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".webp": "image/webp"}.get(suffix, "image/png")
    return to_data_url(record.original_data, mime=mime)


def _record_history(
    history: HistoryStore, settings: config.Settings, source_path: str, png_bytes: bytes
) -> int:
    original: Optional[bytes] = None
    if settings.store_original_in_history:
        try:
            original = Path(source_path).read_bytes()
        except OSError as exc:
            logger.warning("Could not read original %s for history: %s", source_path, exc)
    return history.add_record(
        original_path=source_path,
        original_name=Path(source_path).name,
        processed_data=png_bytes,
        original_data=original,
    )


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, ModelNotReadyError):
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if isinstance(exc, (DecodeError, CompositeError)):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, (InferenceError, EncodeError, ModelLoadError)):
        logger.exception("Background removal failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    raise exc


def create_app(
    settings: Optional[config.Settings] = None,
    engine: Optional[SegmentationEngine] = None,
    history: Optional[HistoryStore] = None,
    autoload_model: Optional[bool] = None,
) -> FastAPI:
    settings = settings or config.get_settings()
    engine = engine or SegmentationEngine(settings=settings)
    autoload = settings.autoload_model if autoload_model is None else autoload_model
    owns_history = history is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.history is None:
            app.state.history = HistoryStore(settings.history_db_path)
        if autoload:
            logger.info("Starting background model initialization")
            engine.initialize_in_background()
        yield
        app.state.queue.request_stop()
        if owns_history and app.state.history is not None:
            app.state.history.close()
            app.state.history = None

    app = FastAPI(title="RMBG Background Removal Service", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.history = history

    def on_completed(item: QueueItem) -> None:
        if app.state.history is not None and item.result is not None:
            _record_history(app.state.history, settings, item.source_path, item.result)

    app.state.queue = BatchQueue(
        process=partial(process_image, engine=engine, settings=settings),
        on_completed=on_completed,
    )

    def _history(request: Request) -> HistoryStore:
        store = request.app.state.history
        if store is None:
            raise HTTPException(status_code=503, detail="History store is not open")
        return store

    def _queue_response(queue: BatchQueue) -> QueueResponse:
        return QueueResponse(
            items=[QueueItemOut.from_item(item) for item in queue.items],
            progress=queue.aggregate_progress(),
            running=queue.is_running,
        )

    @app.get("/health")
    def health():
        return {"status": "ok", "model": engine.state.value}

    @app.get("/model/info")
    def model_info():
        return {**engine.get_model_info(), "state": engine.state.value}

    @app.post("/model/init")
    def model_init():
        if engine.is_ready:
            return {"success": True, "message": "Model already initialized"}
        try:
            engine.initialize()
        except ModelLoadError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"success": True, "message": "Model initialized successfully"}

    @app.post("/remove-bg", response_model=RemoveBgResponse)
    def remove_bg(body: RemoveBgRequest, request: Request):
        try:
            png_bytes = process_image(body.path, engine, output_path=body.outputPath, settings=settings)
        except Exception as exc:  # noqa: BLE001
            _raise_http(exc)

        history_id = None
        store = request.app.state.history
        if store is not None:
            history_id = _record_history(store, settings, body.path, png_bytes)
        return RemoveBgResponse(data=to_data_url(png_bytes), historyId=history_id)

    @app.post("/remove-bg/batch", response_model=BatchResponse)
    def remove_bg_batch(body: BatchRequest):
        try:
            engine.ensure_ready()
        except ModelNotReadyError as exc:
            _raise_http(exc)
        outputs = process_images(body.paths, engine, output_dir=body.outputDir, settings=settings)
        return BatchResponse(
            results=[to_data_url(png) for png in outputs],
            processed=len(outputs),
            total=len(body.paths),
        )

    @app.post("/composite")
    def composite(body: CompositeRequest):
        try:
            spec = background_from_payload(body.background)
            composite_with_background(decode_data_url(body.imageData), spec, body.outputPath)
        except CompositeError as exc:
            _raise_http(exc)
        except OSError as exc:
            logger.exception("Failed to write composite to %s: %s", body.outputPath, exc)
            raise HTTPException(status_code=500, detail="Could not write output file") from exc
        return {"success": True}

    @app.post("/queue", response_model=List[QueueItemOut])
    def enqueue(body: EnqueueRequest, request: Request):
        items = request.app.state.queue.enqueue(body.paths)
        return [QueueItemOut.from_item(item) for item in items]

    @app.get("/queue", response_model=QueueResponse)
    def get_queue(request: Request):
        return _queue_response(request.app.state.queue)

    @app.post("/queue/process", status_code=202)
    def process_queue(request: Request, background_tasks: BackgroundTasks):
        queue: BatchQueue = request.app.state.queue
        if queue.is_running:
            raise HTTPException(status_code=409, detail="A batch run is already in progress")
        try:
            engine.ensure_ready()
        except ModelNotReadyError as exc:
            _raise_http(exc)
        background_tasks.add_task(_run_queue, queue)
        return {"started": True}

    @app.post("/queue/stop")
    def stop_queue(request: Request):
        request.app.state.queue.request_stop()
        return {"stopping": True}

    @app.delete("/queue/completed")
    def clear_completed(request: Request):
        return {"removed": request.app.state.queue.clear_completed()}

    @app.post("/queue/{item_id}/retry", response_model=QueueItemOut)
    def retry_item(item_id: str, request: Request):
        try:
            item = request.app.state.queue.retry(item_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Queue item not found") from exc
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return QueueItemOut.from_item(item)

    @app.delete("/queue/{item_id}")
    def remove_item(item_id: str, request: Request):
        try:
            request.app.state.queue.remove(item_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Queue item not found") from exc
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"removed": True}

    @app.get("/history", response_model=List[HistoryRecordOut])
    def list_history(request: Request, limit: int = Query(50, ge=1, le=500), offset: int = Query(0, ge=0)):
        return [HistoryRecordOut.from_record(r) for r in _history(request).get_records(limit, offset)]

    @app.get("/history/search", response_model=List[HistoryRecordOut])
    def search_history(
        request: Request,
        q: str = Query(..., min_length=1),
        limit: int = Query(50, ge=1, le=500),
        since: Optional[int] = None,
        until: Optional[int] = None,
    ):
        records = _history(request).search(q, limit=limit, since=since, until=until)
        return [HistoryRecordOut.from_record(r) for r in records]

    @app.get("/history/count")
    def history_count(request: Request):
        return {"count": _history(request).count()}

    @app.get("/history/{record_id}", response_model=HistoryRecordOut)
    def get_history_record(record_id: int, request: Request):
        record = _history(request).get_record(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail="History record not found")
        return HistoryRecordOut.from_record(record)

    @app.delete("/history/{record_id}")
    def delete_history_record(record_id: int, request: Request):
        if not _history(request).delete_record(record_id):
            raise HTTPException(status_code=404, detail="History record not found")
        return {"deleted": True}

    @app.delete("/history")
    def clear_history(request: Request):
        return {"count": _history(request).clear()}

    return app


def _run_queue(queue: BatchQueue) -> None:
    try:
        queue.process_all()
    except BatchAlreadyRunningError:
        logger.info("Batch run already in progress, ignoring duplicate start")


settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

app = create_app(settings)
