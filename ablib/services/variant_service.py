# services/variant_service.py
from datetime import datetime, timezone
from typing import Optional

from loguru import logger
from pydantic import ValidationError

from ablib.core.context import LibraryContext
from ablib.core.errors import StorageError, StorageQuotaExceededError, VariantOperationError
from ablib.models.schemas.assignment import UserVariant, utcnow
from ablib.models.schemas.experiment import Experiment
from ablib.models.schemas.storage import SyncAction, SyncOperation, SyncOperationType
from ablib.models.schemas.user import Identity
from ablib.storage.cache_store import VARIANTS_KEY, VARIANTS_TIMESTAMP_KEY, now_ms

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def merge_variants(local: list[UserVariant], incoming: list[UserVariant]) -> list[UserVariant]:
    """
    Merges two assignment lists on (user_id, experiment_key). When both
    sides hold the same pair the more recently updated record wins.
    """
    merged = {variant.composite_key: variant for variant in local}
    for variant in incoming:
        current = merged.get(variant.composite_key)
        if current is None or (variant.updated_at or _EPOCH) >= (current.updated_at or _EPOCH):
            merged[variant.composite_key] = variant
    return list(merged.values())


class VariantService:
    """
    Read-through access to the current user's assignments.

    Unlike identities and experiments, variant reads prefer a stale local
    answer over an error: when the remote store fails, whatever is cached
    is returned.
    """

    def __init__(self, ctx: LibraryContext):
        self.ctx = ctx
        self._refresh_task = None
        ctx.sync_queue.register_handler(SyncOperationType.VARIANT, self.sync_variant_operation)

    # --- Local cache ---

    def _read_local(self, user_id: str) -> Optional[list[UserVariant]]:
        """The cached assignments of `user_id`, or None when nothing usable is cached."""
        try:
            raw = self.ctx.store.get(VARIANTS_KEY)
        except StorageError as e:
            logger.warning(f"Local variants unavailable for user {user_id}: {e}")
            return None

        if raw is None:
            return None

        try:
            variants = [UserVariant.model_validate(item) for item in raw]
        except (ValidationError, TypeError):
            logger.error("Cached variants have an unexpected shape, discarding them")
            self.ctx.store.remove(VARIANTS_KEY)
            return None

        return [variant for variant in variants if variant.user_id == user_id]

    def _write_local(self, variants: list[UserVariant], synced: bool = False) -> None:
        """
        Persists the list. `synced` marks it as freshly pulled from remote.
        Failures are logged only; the sync queue keeps the remote side right.
        """
        try:
            self.ctx.store.set(VARIANTS_KEY, [variant.model_dump(mode="json") for variant in variants])
            if synced:
                self.ctx.store.set(VARIANTS_TIMESTAMP_KEY, now_ms())
        except StorageQuotaExceededError as e:
            logger.warning(f"Local variants not saved, storage is full: {e}")
        except StorageError as e:
            logger.error(f"Failed to save variants locally: {e}")

    def _is_fresh(self) -> bool:
        try:
            timestamp = self.ctx.store.get(VARIANTS_TIMESTAMP_KEY)
        except StorageError:
            return False
        if not isinstance(timestamp, (int, float)):
            return False
        return now_ms() - timestamp <= self.ctx.stale_after_ms

    def clear_local(self) -> None:
        self.ctx.store.remove(VARIANTS_KEY)
        self.ctx.store.remove(VARIANTS_TIMESTAMP_KEY)

    # --- Reads ---

    def _schedule_refresh(self, user_id: str) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = self.ctx.runner.submit(
            self.refresh_variants(user_id), name=f"refresh-variants-{user_id}"
        )

    async def refresh_variants(self, user_id: str) -> None:
        """Merges the remote assignments into the cache. Failures are only logged."""
        try:
            remote_variants = await self.ctx.adapter.get_variants_by_user_id(user_id)
        except Exception as e:
            logger.warning(f"Background refresh of variants for user {user_id} failed: {e}")
            return

        local = self._read_local(user_id) or []
        self._write_local(merge_variants(local, remote_variants or []), synced=True)

    async def get_variants_by_user_id(self, user_id: str) -> list[UserVariant]:
        """
        Returns the user's assignments.

        A non-empty local list is returned immediately (refreshed in the
        background when stale). Otherwise the remote list is fetched and
        cached. If that fetch fails, any cached list, even an empty one,
        is returned instead.

        Raises:
            VariantOperationError: the remote fetch failed and nothing was cached.
        """
        local = self._read_local(user_id)
        if local:
            if not self._is_fresh():
                self._schedule_refresh(user_id)
            return local

        try:
            remote_variants = await self.ctx.adapter.get_variants_by_user_id(user_id)
        except Exception as e:
            if local is not None:
                logger.warning(f"Remote variants unavailable for user {user_id}, using local cache: {e}")
                return local
            raise VariantOperationError("get", user_id, "all", str(e)) from e

        remote_variants = remote_variants or []
        if remote_variants:
            self._write_local(remote_variants, synced=True)
        return remote_variants

    async def get_user_variant_by_experiment_key(
        self, user_id: str, experiment_key: str
    ) -> Optional[UserVariant]:
        """
        Returns the user's assignment for one experiment, or None if neither
        the cache nor the remote store has one. A remote hit is merged into
        the cached list.

        Raises:
            VariantOperationError: nothing was cached and the remote fetch failed.
        """
        local = self._read_local(user_id) or []
        for variant in local:
            if variant.experiment_key == experiment_key:
                if not self._is_fresh():
                    self._schedule_refresh(user_id)
                return variant

        try:
            remote_variant = await self.ctx.adapter.get_variant(user_id, experiment_key)
        except Exception as e:
            raise VariantOperationError("get", user_id, experiment_key, str(e)) from e

        if remote_variant is None:
            return None

        self._write_local(merge_variants(local, [remote_variant]))
        return remote_variant

    # --- Writes ---

    async def save_user_variant_for_experiment(
        self, user_id: str, experiment_key: str, variant: str
    ) -> UserVariant:
        """
        Writes the assignment locally (overwriting any previous one for the
        same experiment), then queues an `update` record for the remote store.
        """
        record = UserVariant(
            user_id=user_id, experiment_key=experiment_key, variant=variant, updated_at=utcnow()
        )

        local = self._read_local(user_id) or []
        self._write_local(merge_variants(local, [record]))

        self.ctx.sync_queue.add(
            SyncOperationType.VARIANT, SyncAction.UPDATE, record.model_dump(mode="json")
        )
        self.ctx.sync_queue.request_flush(SyncOperationType.VARIANT)

        return record

    async def assign_missing(self, identity: Identity, experiments: list[Experiment]) -> list[UserVariant]:
        """
        Assigns `identity` to every experiment it has no variant for yet.

        Before assigning, the remote store is asked once more so that an
        assignment made elsewhere in the meantime is adopted rather than
        overwritten. Returns only the newly created assignments.
        """
        try:
            variants = await self.get_variants_by_user_id(identity.id)
        except VariantOperationError as e:
            logger.warning(f"Could not load assignments for user {identity.id}, assigning locally: {e}")
            variants = []
        known = {variant.experiment_key for variant in variants}

        assigned: list[UserVariant] = []
        for experiment in experiments:
            if experiment.key in known:
                continue

            try:
                remote_variant = await self.get_user_variant_by_experiment_key(identity.id, experiment.key)
            except VariantOperationError as e:
                logger.warning(f"Could not check remote assignment, assigning locally: {e}")
                remote_variant = None

            if remote_variant is None:
                variant = self.ctx.assigner.assign(identity, experiment.key, experiment.splits)
                assigned.append(
                    await self.save_user_variant_for_experiment(identity.id, experiment.key, variant)
                )
                logger.info(
                    f"Assigned user {identity.id} to variant '{variant}' of experiment '{experiment.key}'"
                )

            known.add(experiment.key)

        return assigned

    # --- Remote delivery ---

    async def sync_variant_operation(self, operation: SyncOperation) -> None:
        if operation.action == SyncAction.DELETE:
            logger.warning(f"Remote variant deletion is not supported, dropping {operation.id}")
            return

        record = UserVariant.model_validate(operation.payload)
        try:
            await self.ctx.adapter.save_variant(record.user_id, record.experiment_key, record.variant)
        except Exception as e:
            raise VariantOperationError("save", record.user_id, record.experiment_key, str(e)) from e
