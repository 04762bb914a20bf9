# services/user_service.py
from typing import Optional

from loguru import logger
from pydantic import ValidationError

from ablib.core.context import LibraryContext
from ablib.core.errors import (
    GetUserError,
    SaveUserError,
    StorageCorruptionError,
    StorageError,
    StorageQuotaExceededError,
    StorageUnavailableError,
    UserIdMismatchError,
    UserNotInitializedError,
)
from ablib.models.schemas.storage import SyncAction, SyncOperation, SyncOperationType
from ablib.models.schemas.user import Identity
from ablib.storage.cache_store import (
    USER_KEY,
    USER_TIMESTAMP_KEY,
    VARIANTS_KEY,
    VARIANTS_TIMESTAMP_KEY,
    now_ms,
)


class UserService:
    """
    Local-first access to the single identity held by this storage instance.

    Reads never wait on the network: a stale identity is returned at once
    and refreshed in the background. Writes land in the local cache first
    and reach the remote store through the sync queue.
    """

    def __init__(self, ctx: LibraryContext):
        self.ctx = ctx
        self._refresh_task = None
        ctx.sync_queue.register_handler(SyncOperationType.USER, self.sync_user_operation)

    # --- Staleness ---

    def _is_stale(self) -> bool:
        try:
            timestamp = self.ctx.store.get(USER_TIMESTAMP_KEY)
        except StorageError:
            return True
        if not isinstance(timestamp, (int, float)):
            return True
        return now_ms() - timestamp > self.ctx.stale_after_ms

    def _touch(self) -> None:
        try:
            self.ctx.store.set(USER_TIMESTAMP_KEY, now_ms())
        except StorageError as e:
            logger.debug(f"Could not update user timestamp: {e}")

    # --- Reads ---

    def get_user(self) -> Optional[Identity]:
        """
        Returns the cached identity, or None if there is none (or no local
        store at all). A stale identity schedules a background refresh.

        Raises:
            StorageCorruptionError: the cached identity could not be read.
        """
        try:
            raw = self.ctx.store.get(USER_KEY)
        except StorageUnavailableError:
            return None

        if raw is None:
            return None

        try:
            user = Identity.model_validate(raw)
        except ValidationError:
            self.ctx.store.remove(USER_KEY)
            raise StorageCorruptionError(USER_KEY)

        if self._is_stale() and (self._refresh_task is None or self._refresh_task.done()):
            self._refresh_task = self.ctx.runner.submit(
                self.refresh_user(user.id), name=f"refresh-user-{user.id}"
            )

        return user

    async def refresh_user(self, user_id: str) -> None:
        """Pulls the identity from remote into the cache. Failures are only logged."""
        try:
            remote_user = await self.ctx.adapter.get_user(user_id)
        except Exception as e:
            logger.warning(f"Background refresh failed: {GetUserError(user_id, str(e))}")
            return

        if remote_user is None:
            return

        if self.ctx.sync_queue.get_by_type(SyncOperationType.USER):
            # A local write has not reached the remote store yet
            logger.debug(f"Skipping refresh of user {user_id}, local changes are pending sync")
            return

        try:
            cached = self.ctx.store.get(USER_KEY)
            if not isinstance(cached, dict) or cached.get("id") != user_id:
                return
            self.ctx.store.set(USER_KEY, remote_user.model_dump())
            self._touch()
        except StorageError as e:
            logger.error(f"Failed to update user in local storage: {e}")

    # --- Writes ---

    def _cached_user_id(self) -> Optional[str]:
        try:
            cached = self.ctx.store.get(USER_KEY)
        except StorageCorruptionError:
            return None
        return cached.get("id") if isinstance(cached, dict) else None

    def _write_local_then_queue(self, identity: Identity, action: SyncAction) -> None:
        payload = identity.model_dump()
        try:
            self.ctx.store.set(USER_KEY, payload)
        except StorageQuotaExceededError:
            # The remote store can still be brought up to date
            self.ctx.sync_queue.add(SyncOperationType.USER, action, payload)
            self.ctx.sync_queue.request_flush(SyncOperationType.USER)
            raise

        self._touch()
        self.ctx.sync_queue.add(SyncOperationType.USER, action, payload)
        self.ctx.sync_queue.request_flush(SyncOperationType.USER)

    async def save_user(self, identity: Identity) -> None:
        """
        Stores `identity` locally (optimistic), queues a `create` record and
        starts best-effort background delivery.

        Raises:
            StorageError: the local write failed.
        """
        previous_id = self._cached_user_id()

        self._write_local_then_queue(identity, SyncAction.CREATE)

        if previous_id != identity.id:
            # Cached assignments belonged to someone else
            self.ctx.store.remove(VARIANTS_KEY)
            self.ctx.store.remove(VARIANTS_TIMESTAMP_KEY)

    async def update_user(self, identity: Identity) -> None:
        """
        Replaces the cached identity with `identity`, which must carry the
        same id as the one initialized earlier.

        Raises:
            UserNotInitializedError: no identity is cached.
            UserIdMismatchError: the cached identity has a different id.
        """
        current = self.get_user()
        if current is None:
            raise UserNotInitializedError()
        if current.id != identity.id:
            raise UserIdMismatchError(current.id, identity.id)

        self._write_local_then_queue(identity, SyncAction.UPDATE)

    # --- Remote delivery ---

    async def sync_user_operation(self, operation: SyncOperation) -> None:
        if operation.action == SyncAction.DELETE:
            logger.warning(f"Remote user deletion is not supported, dropping {operation.id}")
            return

        identity = Identity.model_validate(operation.payload)
        try:
            await self.ctx.adapter.save_user(identity)
        except Exception as e:
            raise SaveUserError(identity.id, str(e)) from e
        self._touch()
