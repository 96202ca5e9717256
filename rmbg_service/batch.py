"""
Batch queue with per-item status tracking.

`BatchQueue` runs the single-image pipeline over queued files one at a
time. Per-item failures are recorded on the item and never abort the run,
so hosts can show inline errors and offer a retry.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import logging
import os
from pathlib import Path
from threading import Event, Lock
from typing import Callable, Dict, Iterable, List, Optional, Union
import uuid

from .errors import BatchAlreadyRunningError, InvalidTransitionError

logger = logging.getLogger(__name__)


class ItemStatus(str, Enum):
    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class QueueItem:
    id: str
    source_path: str
    name: str
    size: Optional[int] = None
    status: ItemStatus = ItemStatus.WAITING
    progress: int = 0
    result: Optional[bytes] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Ok:
    item_id: str
    result: bytes


@dataclass(frozen=True)
class Err:
    item_id: str
    message: str


Outcome = Union[Ok, Err]
ItemCallback = Callable[[QueueItem], None]


def _file_size(path: str) -> Optional[int]:
    try:
        return os.path.getsize(path)
    except OSError:
        return None


class BatchQueue:
    """
    In-memory queue of images to process.

    Only the queue mutates item state; readers get copies through `items`
    and `get`. `on_change` fires after every status transition and
    `on_completed` once per successfully processed item.
    """

    def __init__(
        self,
        process: Callable[[str], bytes],
        on_completed: Optional[ItemCallback] = None,
        on_change: Optional[ItemCallback] = None,
    ):
        self._process = process
        self._on_completed = on_completed
        self._on_change = on_change
        self._items: List[QueueItem] = []
        self._lock = Lock()
        self._run_lock = Lock()
        self._stop = Event()

    @property
    def items(self) -> List[QueueItem]:
        with self._lock:
            return [replace(item) for item in self._items]

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def get(self, item_id: str) -> Optional[QueueItem]:
        with self._lock:
            item = self._find(item_id)
            return replace(item) if item is not None else None

    def counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in ItemStatus}
            for item in self._items:
                counts[item.status.value] += 1
            return counts

    def enqueue(self, paths: Iterable[Union[str, Path]]) -> List[QueueItem]:
        """Add one `waiting` item per path without starting work."""
        new_items = [
            QueueItem(
                id=uuid.uuid4().hex,
                source_path=str(path),
                name=Path(path).name,
                size=_file_size(str(path)),
            )
            for path in paths
        ]
        with self._lock:
            self._items.extend(new_items)
        logger.info("Enqueued %d items", len(new_items))
        return [replace(item) for item in new_items]

    def retry(self, item_id: str) -> QueueItem:
        """Move a failed item back to `waiting`."""
        with self._lock:
            item = self._require(item_id)
            if item.status is not ItemStatus.ERROR:
                raise InvalidTransitionError(f"Item {item_id} is {item.status.value}, only failed items can be retried")
            item.status = ItemStatus.WAITING
            item.progress = 0
            item.error = None
            snapshot = replace(item)
        self._notify(snapshot)
        return snapshot

    def remove(self, item_id: str) -> None:
        with self._lock:
            item = self._require(item_id)
            if item.status is ItemStatus.PROCESSING:
                raise InvalidTransitionError(f"Item {item_id} is being processed")
            self._items.remove(item)

    def clear_completed(self) -> int:
        """Drop completed items from the queue; persisted history is untouched."""
        with self._lock:
            before = len(self._items)
            self._items = [item for item in self._items if item.status is not ItemStatus.COMPLETED]
            removed = before - len(self._items)
        logger.info("Cleared %d completed items", removed)
        return removed

    def aggregate_progress(self) -> float:
        """Mean progress over all items: completed count as 100, waiting/error as 0."""
        with self._lock:
            if not self._items:
                return 0.0
            total = 0
            for item in self._items:
                if item.status is ItemStatus.COMPLETED:
                    total += 100
                elif item.status is ItemStatus.PROCESSING:
                    total += item.progress
            return total / len(self._items)

    def request_stop(self) -> None:
        """Finish the current item, then stop the running batch."""
        if self.is_running:
            logger.info("Stop requested, finishing current item")
        self._stop.set()

    def process_all(self) -> List[Outcome]:
        """
        Process every `waiting` or `error` item in enqueue order.

        Items run strictly one at a time. Returns one `Ok`/`Err` per item
        handled; a stop request leaves the remaining items `waiting`.
        """
        if not self._run_lock.acquire(blocking=False):
            raise BatchAlreadyRunningError("A batch run is already in progress")
        try:
            self._stop.clear()
            with self._lock:
                pending = [
                    item.id for item in self._items if item.status in (ItemStatus.WAITING, ItemStatus.ERROR)
                ]
            logger.info("Batch run started: %d items", len(pending))

            outcomes: List[Outcome] = []
            for item_id in pending:
                if self._stop.is_set():
                    logger.info("Batch run stopped with %d items left", len(pending) - len(outcomes))
                    break
                outcome = self._process_item(item_id)
                if outcome is not None:
                    outcomes.append(outcome)

            failed = sum(1 for outcome in outcomes if isinstance(outcome, Err))
            logger.info("Batch run finished: %d ok, %d failed", len(outcomes) - failed, failed)
            return outcomes
        finally:
            self._stop.clear()
            self._run_lock.release()

    def _process_item(self, item_id: str) -> Optional[Outcome]:
        with self._lock:
            item = self._find(item_id)
            # removed or retried elsewhere since the run started
            if item is None or item.status not in (ItemStatus.WAITING, ItemStatus.ERROR):
                return None
            item.status = ItemStatus.PROCESSING
            item.progress = 0
            item.error = None
            source_path = item.source_path
            snapshot = replace(item)
        self._notify(snapshot)

        try:
            result = self._process(source_path)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or exc.__class__.__name__
            logger.warning("Batch item %s failed: %s", snapshot.name, message)
            with self._lock:
                item.status = ItemStatus.ERROR
                item.progress = 0
                item.result = None
                item.error = message
                snapshot = replace(item)
            self._notify(snapshot)
            return Err(item_id=item_id, message=message)

        with self._lock:
            item.status = ItemStatus.COMPLETED
            item.progress = 100
            item.result = result
            snapshot = replace(item)
        self._notify(snapshot)

        if self._on_completed is not None:
            try:
                self._on_completed(snapshot)
            except Exception as exc:  # noqa: BLE001
                logger.error("on_completed hook failed for %s: %s", snapshot.name, exc)
        return Ok(item_id=item_id, result=result)

    def _notify(self, item: QueueItem) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(item)
        except Exception as exc:  # noqa: BLE001
            logger.error("on_change hook failed for %s: %s", item.name, exc)

    def _find(self, item_id: str) -> Optional[QueueItem]:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def _require(self, item_id: str) -> QueueItem:
        item = self._find(item_id)
        if item is None:
            raise KeyError(item_id)
        return item
