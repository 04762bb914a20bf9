from typing import Any, Mapping, Optional, Union

from loguru import logger

from ablib.adapters.base import RemoteStorageAdapter, Unsubscribe
from ablib.assignment.hashing import HashingConfig
from ablib.core.connectivity import ConnectivityMonitor
from ablib.core.context import LibraryContext, build_context
from ablib.core.errors import AdapterNotInitializedError, GetExperimentsError, InitializationError
from ablib.core.settings import Settings, config_settings
from ablib.models.schemas.assignment import UserVariant
from ablib.models.schemas.user import Identity
from ablib.services.experiment_service import ExperimentService
from ablib.services.update_listener import UpdateListener
from ablib.services.user_service import UserService
from ablib.services.variant_service import VariantService
from ablib.storage.cache_store import LocalCacheStore

IdentityInput = Union[Identity, Mapping[str, Any]]
HashingInput = Union[HashingConfig, Mapping[str, Any]]


def _as_identity(identity: IdentityInput) -> Identity:
    return identity if isinstance(identity, Identity) else Identity.model_validate(identity)


class ABTestingClient:
    """The three entry points, composed over one library context."""

    def __init__(self, ctx: LibraryContext):
        self.ctx = ctx
        self.experiment_service = ExperimentService(ctx)
        self.user_service = UserService(ctx)
        self.variant_service = VariantService(ctx)
        self.update_listener = UpdateListener(
            ctx, self.experiment_service, self.user_service, self.variant_service
        )

    async def start(self) -> Unsubscribe:
        """Loads the experiment registry and starts listening for updates."""
        try:
            await self.experiment_service.get_experiments()
        except GetExperimentsError as e:
            logger.warning(f"Could not load experiments at startup: {e}")

        return self.update_listener.start()

    async def initialize_user(self, identity: IdentityInput) -> list[UserVariant]:
        """
        Stores the identity and makes sure it holds a variant for every
        current experiment. Returns the user's assignments.
        """
        user = _as_identity(identity)
        await self.user_service.save_user(user)

        experiments = await self.experiment_service.get_experiments()
        await self.variant_service.assign_missing(user, experiments)

        return await self.variant_service.get_variants_by_user_id(user.id)

    async def update_user(self, identity: IdentityInput, reassign_variant: bool = False) -> None:
        """
        Updates the cached identity. With `reassign_variant`, every current
        experiment is re-bucketed under the updated identity and the new
        assignments overwrite the old ones.
        """
        user = _as_identity(identity)
        await self.user_service.update_user(user)

        if not reassign_variant:
            return

        experiments = await self.experiment_service.get_experiments()
        if not experiments:
            return

        self.variant_service.clear_local()
        for experiment in experiments:
            variant = self.ctx.assigner.assign(user, experiment.key, experiment.splits)
            await self.variant_service.save_user_variant_for_experiment(user.id, experiment.key, variant)
        logger.info(f"Reassigned user {user.id} across {len(experiments)} experiments")

    async def get_variant(self, experiment_key: str) -> Optional[str]:
        """
        Returns the current user's variant for `experiment_key`, assigning
        one on the spot if the experiment is registered but unassigned.
        Returns None for an unknown experiment.

        Raises:
            InitializationError: no user has been initialized.
        """
        user = self.user_service.get_user()
        if user is None:
            raise InitializationError("get_variant")

        saved = await self.variant_service.get_user_variant_by_experiment_key(user.id, experiment_key)
        if saved is not None:
            return saved.variant

        experiment = self.ctx.registry.find(experiment_key)
        if experiment is None:
            return None

        variant = self.ctx.assigner.assign(user, experiment.key, experiment.splits)
        await self.variant_service.save_user_variant_for_experiment(user.id, experiment.key, variant)
        return variant

    async def flush(self) -> None:
        """Delivers every queued write now."""
        await self.ctx.sync_queue.process_all()

    async def close(self) -> None:
        self.update_listener.stop()
        self.ctx.sync_queue.close()
        await self.ctx.runner.drain()
        if self.ctx.local_engine is not None:
            self.ctx.local_engine.dispose()


# Process-wide instance; the last initialize_library call wins
_client: Optional[ABTestingClient] = None


async def initialize_library(
    adapter: RemoteStorageAdapter,
    hashing: Optional[HashingInput] = None,
    settings: Optional[Settings] = None,
    store: Optional[LocalCacheStore] = None,
    connectivity: Optional[ConnectivityMonitor] = None,
) -> Unsubscribe:
    """
    Configures the process-wide library instance and returns the function
    that stops listening for experiment updates.
    """
    global _client

    settings = settings or config_settings
    hashing_config = None
    if hashing is not None:
        hashing_config = hashing if isinstance(hashing, HashingConfig) else HashingConfig(
            salt=hashing.get("salt", settings.HASHING_SALT),
            version=hashing.get("version", settings.HASHING_VERSION),
        )

    if _client is not None:
        await _client.close()

    ctx = build_context(adapter, settings, hashing=hashing_config, store=store, connectivity=connectivity)
    _client = ABTestingClient(ctx)
    unsubscribe = await _client.start()
    logger.info("AB testing library initialized")
    return unsubscribe


def get_client() -> ABTestingClient:
    if _client is None:
        raise AdapterNotInitializedError()
    return _client


async def shutdown_library() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None


async def initialize_user(identity: IdentityInput) -> list[UserVariant]:
    return await get_client().initialize_user(identity)


async def update_user(identity: IdentityInput, reassign_variant: bool = False) -> None:
    await get_client().update_user(identity, reassign_variant=reassign_variant)


async def get_variant(experiment_key: str) -> Optional[str]:
    return await get_client().get_variant(experiment_key)
