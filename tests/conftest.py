"""
Shared fixtures: an in-memory remote adapter and a library context over
an in-memory SQLite local store.
"""

from typing import Optional

import pytest

from ablib.adapters.base import ExperimentsCallback, PollOnly, PushCapable, RemoteStorageAdapter
from ablib.core.connectivity import ConnectivityMonitor
from ablib.core.context import build_context
from ablib.core.db import create_db_engine, create_session_factory
from ablib.core.errors import AdapterError
from ablib.core.settings import Settings
from ablib.models.orm.cache_entry import CacheEntryORM
from ablib.models.schemas.assignment import UserVariant, utcnow
from ablib.models.schemas.experiment import Experiment
from ablib.models.schemas.user import Identity
from ablib.storage.cache_store import LocalCacheStore


class FakeRemoteAdapter(RemoteStorageAdapter):
    """
    Dict-backed remote store. Set `fail` to make every call raise
    AdapterError, or put method names in `failing` to fail only those.
    """

    def __init__(self, experiments: Optional[list[Experiment]] = None, push: bool = False):
        self.users: dict[str, Identity] = {}
        self.experiments: list[Experiment] = list(experiments or [])
        self.variants: dict[tuple[str, str], UserVariant] = {}
        self.fail = False
        self.failing: set[str] = set()
        self.calls: list[str] = []
        self.push = push
        self.subscribers: list[ExperimentsCallback] = []
        self.subscribe_error: Optional[Exception] = None

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.fail or name in self.failing:
            raise AdapterError(name, "simulated outage")

    async def get_user(self, user_id):
        self._call("get_user")
        return self.users.get(user_id)

    async def save_user(self, identity):
        self._call("save_user")
        self.users[identity.id] = identity
        return identity

    async def get_experiments(self):
        self._call("get_experiments")
        return [experiment for experiment in self.experiments if experiment.enabled]

    async def get_variants_by_user_id(self, user_id):
        self._call("get_variants_by_user_id")
        return [v for (uid, _), v in sorted(self.variants.items()) if uid == user_id]

    async def get_variant(self, user_id, experiment_key):
        self._call("get_variant")
        return self.variants.get((user_id, experiment_key))

    async def save_variant(self, user_id, experiment_key, variant):
        self._call("save_variant")
        self.variants[(user_id, experiment_key)] = UserVariant(
            user_id=user_id, experiment_key=experiment_key, variant=variant, updated_at=utcnow()
        )

    @property
    def capability(self):
        if not self.push:
            return PollOnly()
        return PushCapable(subscribe=self._subscribe)

    def _subscribe(self, callback: ExperimentsCallback):
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscribers.append(callback)
        return lambda: self.subscribers.remove(callback)

    def publish(self, experiments: list[Experiment]) -> None:
        self.experiments = list(experiments)
        for callback in list(self.subscribers):
            callback(list(experiments))


def make_experiment(key: str, splits=None, name: Optional[str] = None, enabled: bool = True) -> Experiment:
    return Experiment(
        key=key,
        name=name or key.upper(),
        splits=splits if splits is not None else {"A": 0.5, "B": 0.5},
        enabled=enabled,
    )


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        LOCAL_DATABASE_URL="sqlite://",
        SYNC_BASE_DELAY_MS=0,
        SYNC_MAX_DELAY_MS=0,
        POLL_INTERVAL_SECONDS=3600,
        TOKENS=[],
    )


@pytest.fixture
def store():
    engine = create_db_engine("sqlite://")
    yield LocalCacheStore(create_session_factory(engine, CacheEntryORM), quota_bytes=64 * 1024)
    engine.dispose()


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(online=True)


@pytest.fixture
def adapter():
    return FakeRemoteAdapter(experiments=[make_experiment("exp-key")])


@pytest.fixture
def ctx(adapter, settings, store, connectivity):
    return build_context(adapter, settings, store=store, connectivity=connectivity)


@pytest.fixture
def identity():
    return Identity(id="user-123", email="test@example.com")
