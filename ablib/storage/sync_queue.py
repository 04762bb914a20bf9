"""
Durable outbox for writes that still have to reach the remote store.

Records are kept in the local cache under SYNC_QUEUE_KEY and delivered
one at a time, oldest first, only while the environment is online. A
failed delivery bumps the record's retry counter; once it reaches the
ceiling the record is dropped and logged as permanently failed. Between
failures the queue waits min(base * 2**retries, cap) ms plus up to 30%
random jitter. If the local store refuses a write (full or missing), the
queue is held in memory until a later save goes through.
"""

import asyncio
import random
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from pydantic import ValidationError

from ablib.core.connectivity import ConnectivityMonitor
from ablib.core.errors import StorageError
from ablib.core.tasks import BackgroundRunner
from ablib.models.schemas.storage import SyncAction, SyncOperation, SyncOperationType
from ablib.storage.cache_store import SYNC_QUEUE_KEY, LocalCacheStore, now_ms

SyncHandler = Callable[[SyncOperation], Awaitable[None]]

MAX_RETRIES = 5
BASE_DELAY_MS = 1000
MAX_DELAY_MS = 30000
JITTER_RATIO = 0.3


def compute_backoff_delay(
    retries: int,
    base_delay_ms: int = BASE_DELAY_MS,
    max_delay_ms: int = MAX_DELAY_MS,
    jitter_ratio: float = JITTER_RATIO,
) -> int:
    """Exponential backoff in milliseconds with up to `jitter_ratio` extra jitter."""
    delay = min(base_delay_ms * (2**retries), max_delay_ms)
    jitter = random.random() * jitter_ratio * delay
    return int(delay + jitter)


class SyncQueue:
    def __init__(
        self,
        store: LocalCacheStore,
        connectivity: ConnectivityMonitor,
        runner: BackgroundRunner,
        max_retries: int = MAX_RETRIES,
        base_delay_ms: int = BASE_DELAY_MS,
        max_delay_ms: int = MAX_DELAY_MS,
        jitter_ratio: float = JITTER_RATIO,
    ):
        self.store = store
        self.connectivity = connectivity
        self.runner = runner
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter_ratio = jitter_ratio
        self._handlers: dict[SyncOperationType, SyncHandler] = {}
        self._flush_tasks: dict[SyncOperationType, asyncio.Task] = {}
        self._flush_requested: set[SyncOperationType] = set()
        self._unsaved: Optional[list[SyncOperation]] = None
        self._remove_listener = connectivity.add_online_listener(self._on_online)

    # --- Persistence ---

    def _load(self) -> list[SyncOperation]:
        if self._unsaved is not None:
            return [op.model_copy() for op in self._unsaved]

        try:
            raw = self.store.get(SYNC_QUEUE_KEY) or []
        except StorageError as e:
            logger.warning(f"Could not read sync queue, treating it as empty: {e}")
            return []

        if not isinstance(raw, list):
            logger.error("Sync queue has an unexpected shape, discarding it")
            self._save([])
            return []

        queue = []
        for item in raw:
            try:
                queue.append(SyncOperation.model_validate(item))
            except (ValidationError, TypeError):
                logger.error(f"Dropping malformed sync record: {item!r}")
        if len(queue) != len(raw):
            self._save(queue)
        return queue

    def _save(self, queue: list[SyncOperation]) -> None:
        try:
            self.store.set(SYNC_QUEUE_KEY, [op.model_dump(mode="json") for op in queue])
        except StorageError as e:
            # Held in memory until the store accepts a write again
            logger.error(f"Failed to save sync queue, keeping {len(queue)} records in memory: {e}")
            self._unsaved = [op.model_copy() for op in queue]
            return
        self._unsaved = None

    # --- Queue operations ---

    def add(
        self, type: SyncOperationType, action: SyncAction, payload: dict[str, Any]
    ) -> SyncOperation:
        queue = self._load()
        timestamp = now_ms()
        operation = SyncOperation(
            id=f"{type.value}_{action.value}_{timestamp}_{uuid.uuid4().hex[:8]}",
            type=type,
            action=action,
            payload=payload,
            timestamp=timestamp,
            retries=0,
        )
        queue.append(operation)
        self._save(queue)
        return operation

    def remove(self, operation_id: str) -> None:
        self._save([op for op in self._load() if op.id != operation_id])

    def get_all(self) -> list[SyncOperation]:
        return self._load()

    def get_by_type(self, type: SyncOperationType) -> list[SyncOperation]:
        return [op for op in self._load() if op.type == type]

    def clear(self) -> None:
        self._save([])

    def has_pending(self) -> bool:
        return self.pending_count() > 0

    def pending_count(self) -> int:
        return len(self._load())

    # --- Delivery ---

    def register_handler(self, type: SyncOperationType, handler: SyncHandler) -> None:
        self._handlers[type] = handler

    def _record_failure(self, operation: SyncOperation, error: Exception) -> Optional[SyncOperation]:
        """Bumps the retry counter; returns the updated record, or None if it was dropped."""
        queue = self._load()
        for index, queued in enumerate(queue):
            if queued.id != operation.id:
                continue

            queued.retries += 1
            if queued.retries >= self.max_retries:
                del queue[index]
                self._save(queue)
                logger.warning(
                    f"Sync operation {queued.id} failed after {self.max_retries} retries, "
                    f"dropping it: {error}"
                )
                return None

            self._save(queue)
            logger.debug(f"Sync operation {queued.id} failed (attempt {queued.retries}): {error}")
            return queued

        return None

    async def process_operation(self, operation: SyncOperation, sync_fn: SyncHandler) -> bool:
        """Delivers one record. Returns True once the remote store confirmed it."""
        if not self.connectivity.is_online:
            return False

        try:
            await sync_fn(operation)
        except Exception as e:
            self._record_failure(operation, e)
            return False

        self.remove(operation.id)
        return True

    async def process_by_type(self, type: SyncOperationType, sync_fn: SyncHandler) -> None:
        """Delivers every queued record of `type`, sequentially, in FIFO order."""
        if not self.connectivity.is_online:
            return

        for snapshot in self.get_by_type(type):
            if not self.connectivity.is_online:
                return

            # Another flush may have delivered or dropped it meanwhile
            operation = next((op for op in self._load() if op.id == snapshot.id), None)
            if operation is None:
                continue

            if await self.process_operation(operation, sync_fn):
                continue

            current = next((op for op in self._load() if op.id == operation.id), None)
            if current is not None and current.retries < self.max_retries:
                delay_ms = compute_backoff_delay(
                    current.retries, self.base_delay_ms, self.max_delay_ms, self.jitter_ratio
                )
                await asyncio.sleep(delay_ms / 1000)

    async def process_all(self) -> None:
        """Flushes every queued record through the handler registered for its type."""
        if not self.connectivity.is_online:
            return

        operations_by_type: dict[SyncOperationType, list[SyncOperation]] = defaultdict(list)
        for operation in self._load():
            operations_by_type[operation.type].append(operation)

        for type in operations_by_type:
            handler = self._handlers.get(type)
            if handler is None:
                logger.warning(f"No sync handler registered for type: {type.value}")
                continue
            await self.process_by_type(type, handler)

    def request_flush(self, type: SyncOperationType) -> None:
        """
        Starts background delivery of `type` records. While a delivery for
        that type is already running, the request is folded into it so
        records are never delivered by two tasks at once.
        """
        task = self._flush_tasks.get(type)
        if task is not None and not task.done():
            self._flush_requested.add(type)
            return

        task = self.runner.submit(self._flush_loop(type), name=f"sync-{type.value}")
        if task is not None:
            self._flush_tasks[type] = task

    async def _flush_loop(self, type: SyncOperationType) -> None:
        handler = self._handlers.get(type)
        if handler is None:
            logger.warning(f"No sync handler registered for type: {type.value}")
            return

        self._flush_requested.add(type)
        while type in self._flush_requested:
            self._flush_requested.discard(type)
            await self.process_by_type(type, handler)

    def _on_online(self) -> None:
        for type in {operation.type for operation in self._load()}:
            self.request_flush(type)

    def close(self) -> None:
        self._remove_listener()
