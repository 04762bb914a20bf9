from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.engine import Engine

from ablib.adapters.base import RemoteStorageAdapter
from ablib.assignment.assigner import VariantAssigner
from ablib.assignment.hashing import HashingConfig
from ablib.assignment.splits import SplitNormalizer
from ablib.core.connectivity import ConnectivityMonitor
from ablib.core.db import create_db_engine, create_session_factory
from ablib.core.settings import Settings
from ablib.core.tasks import BackgroundRunner
from ablib.models.orm.cache_entry import CacheEntryORM
from ablib.services.experiment_registry import ExperimentRegistry
from ablib.storage.cache_store import LocalCacheStore
from ablib.storage.sync_queue import SyncQueue


@dataclass
class LibraryContext:
    """
    Everything the services share for one library instance: the adapter,
    the local store and outbox, the in-memory experiment registry and the
    hashing configuration. Built once by the bootstrap caller and passed
    explicitly to every service.
    """

    settings: Settings
    adapter: RemoteStorageAdapter
    store: LocalCacheStore
    connectivity: ConnectivityMonitor
    runner: BackgroundRunner
    sync_queue: SyncQueue
    registry: ExperimentRegistry
    normalizer: SplitNormalizer
    hashing: HashingConfig
    assigner: VariantAssigner = field(init=False)
    local_engine: Optional[Engine] = None

    def __post_init__(self):
        self.assigner = VariantAssigner(self.normalizer, lambda: self.hashing)

    def set_hashing(self, salt: Optional[str] = None, version: Optional[int] = None) -> None:
        self.hashing = HashingConfig(
            salt=self.hashing.salt if salt is None else salt,
            version=self.hashing.version if version is None else version,
        )

    @property
    def stale_after_ms(self) -> int:
        return int(self.settings.STALE_AFTER_SECONDS * 1000)


def build_context(
    adapter: RemoteStorageAdapter,
    settings: Settings,
    hashing: Optional[HashingConfig] = None,
    store: Optional[LocalCacheStore] = None,
    connectivity: Optional[ConnectivityMonitor] = None,
) -> LibraryContext:
    local_engine = None
    if store is None:
        session_factory = None
        if settings.LOCAL_DATABASE_URL:
            local_engine = create_db_engine(settings.LOCAL_DATABASE_URL)
            session_factory = create_session_factory(local_engine, CacheEntryORM)
        store = LocalCacheStore(session_factory, quota_bytes=settings.STORAGE_QUOTA_BYTES)

    connectivity = connectivity or ConnectivityMonitor()
    runner = BackgroundRunner()
    sync_queue = SyncQueue(
        store,
        connectivity,
        runner,
        max_retries=settings.SYNC_MAX_RETRIES,
        base_delay_ms=settings.SYNC_BASE_DELAY_MS,
        max_delay_ms=settings.SYNC_MAX_DELAY_MS,
        jitter_ratio=settings.SYNC_JITTER_RATIO,
    )

    return LibraryContext(
        settings=settings,
        adapter=adapter,
        store=store,
        connectivity=connectivity,
        runner=runner,
        sync_queue=sync_queue,
        registry=ExperimentRegistry(),
        normalizer=SplitNormalizer(),
        hashing=hashing or HashingConfig(settings.HASHING_SALT, settings.HASHING_VERSION),
        local_engine=local_engine,
    )
