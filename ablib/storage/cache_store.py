"""
Versioned, checksummed key/value layer over the local cache table.

Every value is written inside an envelope::

    {"data": ..., "version": 1, "timestamp": <epoch ms>, "checksum": "<fnv1a hex>"}

Reads migrate older envelope versions forward and verify the checksum.
A mismatch is only logged; unparseable content is deleted and reported
as StorageCorruptionError so callers can fall back to the remote store.
The store never retries; retry policy belongs to the sync queue.
"""

import json
import time
from typing import Any, Optional

from loguru import logger
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ablib.assignment.hashing import fnv1a_32
from ablib.core.errors import (
    StorageCorruptionError,
    StorageQuotaExceededError,
    StorageUnavailableError,
)
from ablib.models.schemas.storage import CacheEnvelope
from ablib.repositories.cache_repo import CacheEntryRepository

CURRENT_STORAGE_VERSION = 1

# Persisted keys
USER_KEY = "ab_user"
USER_TIMESTAMP_KEY = "ab_user_timestamp"
VARIANTS_KEY = "ab_variants"
VARIANTS_TIMESTAMP_KEY = "ab_variants_timestamp"
SYNC_QUEUE_KEY = "ab_sync_queue"


def now_ms() -> int:
    return int(time.time() * 1000)


def _canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), allow_nan=False)


def compute_checksum(data: Any) -> str:
    return f"{fnv1a_32(_canonical_json(data)):08x}"


def _is_disk_full(error: OperationalError) -> bool:
    return "full" in str(error.orig).lower()


class LocalCacheStore:
    def __init__(self, session_factory: Optional[sessionmaker], quota_bytes: int = 5 * 1024 * 1024):
        """
        Args:
            session_factory: Sessions over the local cache database, or None
                when this environment has no persistent store.
            quota_bytes: Upper bound on the total size of stored values.
        """
        self.session_factory = session_factory
        self.quota_bytes = quota_bytes

    @property
    def is_available(self) -> bool:
        return self.session_factory is not None

    def _require(self, operation: str) -> sessionmaker:
        if self.session_factory is None:
            raise StorageUnavailableError(operation)
        return self.session_factory

    def _safe_remove(self, key: str) -> None:
        try:
            with self._require("remove")() as db:
                CacheEntryRepository(db).delete(key)
        except (SQLAlchemyError, StorageUnavailableError) as e:
            logger.warning(f"Failed to remove corrupted cache entry '{key}': {e}")

    def _migrate(self, envelope: CacheEnvelope) -> CacheEnvelope:
        if envelope.version < CURRENT_STORAGE_VERSION:
            return envelope.model_copy(
                update={
                    "version": CURRENT_STORAGE_VERSION,
                    "timestamp": envelope.timestamp or now_ms(),
                }
            )
        return envelope

    def _read_raw(self, key: str) -> Optional[str]:
        session_factory = self._require("get")
        try:
            with session_factory() as db:
                return CacheEntryRepository(db).get_value(key)
        except OperationalError as e:
            raise StorageUnavailableError("get") from e
        except SQLAlchemyError as e:
            raise StorageCorruptionError(key) from e

    def get_envelope(self, key: str) -> Optional[CacheEnvelope]:
        """
        Returns the migrated envelope stored under `key`, or None if the key
        is absent. Legacy values stored without an envelope are wrapped as
        version 0 with a zero timestamp.

        Raises:
            StorageUnavailableError: no persistent store.
            StorageCorruptionError: the stored content could not be parsed;
                the entry has been deleted.
        """
        raw = self._read_raw(key)
        if raw is None or raw == "":
            return None

        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.error(f"Corrupted cache entry for key '{key}', removing it")
            self._safe_remove(key)
            raise StorageCorruptionError(key)

        if not (isinstance(parsed, dict) and "data" in parsed and "version" in parsed):
            logger.warning(f"Legacy storage format detected for key '{key}'")
            return CacheEnvelope(data=parsed, version=0, timestamp=0)

        try:
            envelope = CacheEnvelope.model_validate(parsed)
        except ValidationError:
            logger.error(f"Invalid envelope for key '{key}', removing it")
            self._safe_remove(key)
            raise StorageCorruptionError(key)

        envelope = self._migrate(envelope)

        if envelope.checksum:
            try:
                computed = compute_checksum(envelope.data)
            except (TypeError, ValueError):
                computed = ""
            if computed and computed != envelope.checksum:
                # Optimistic trust: the data is still returned
                logger.warning(f"Checksum mismatch for key '{key}'. Data integrity may be compromised.")

        return envelope

    def get(self, key: str) -> Any:
        envelope = self.get_envelope(key)
        return envelope.data if envelope is not None else None

    def set(self, key: str, value: Any) -> None:
        """
        Wraps `value` in a fresh envelope and persists it.

        Raises:
            StorageUnavailableError: no persistent store, or the database
                could not be reached.
            StorageQuotaExceededError: the write would exceed the quota or
                the disk is full.
            StorageCorruptionError: the value is not JSON serializable or the
                write failed for another reason.
        """
        session_factory = self._require("set")

        try:
            envelope = CacheEnvelope(
                data=value,
                version=CURRENT_STORAGE_VERSION,
                timestamp=now_ms(),
                checksum=compute_checksum(value),
            )
            serialized = _canonical_json(envelope.model_dump())
        except (TypeError, ValueError) as e:
            raise StorageCorruptionError(key) from e

        try:
            with session_factory() as db:
                repo = CacheEntryRepository(db)
                if repo.total_size(exclude_key=key) + len(serialized) > self.quota_bytes:
                    logger.warning(f"Local storage quota exceeded for key '{key}'. Data not saved.")
                    raise StorageQuotaExceededError(key)
                repo.put(key, serialized)
        except OperationalError as e:
            if _is_disk_full(e):
                logger.warning(f"Local database is full, could not save key '{key}'")
                raise StorageQuotaExceededError(key) from e
            raise StorageUnavailableError("set") from e
        except SQLAlchemyError as e:
            raise StorageCorruptionError(key) from e

    def remove(self, key: str) -> None:
        session_factory = self._require("remove")
        try:
            with session_factory() as db:
                CacheEntryRepository(db).delete(key)
        except SQLAlchemyError as e:
            # Removal is best effort
            logger.warning(f"Failed to remove item '{key}' from local storage: {e}")

    def has(self, key: str) -> bool:
        if self.session_factory is None:
            return False
        try:
            with self.session_factory() as db:
                return CacheEntryRepository(db).exists(key)
        except SQLAlchemyError:
            return False

    def clear(self) -> None:
        session_factory = self._require("clear")
        try:
            with session_factory() as db:
                CacheEntryRepository(db).delete_all()
        except SQLAlchemyError as e:
            raise StorageUnavailableError("clear") from e
