"""
Keeps the initialized user's assignments in step with the experiment set.

Push-capable adapters deliver the full experiment list on every change.
Poll-only adapters are asked for the list on a fixed interval, and a
change in the list's structural signature counts as an update. Either
way only experiments the user has no variant for are assigned; existing
assignments are never touched.
"""

import asyncio
import json
from typing import Optional

from loguru import logger

from ablib.adapters.base import PushCapable, Unsubscribe
from ablib.core.context import LibraryContext
from ablib.core.errors import RealtimeConnectionError
from ablib.models.schemas.assignment import UserVariant
from ablib.models.schemas.experiment import Experiment
from ablib.services.experiment_service import ExperimentService
from ablib.services.user_service import UserService
from ablib.services.variant_service import VariantService


def experiments_signature(experiments: list[Experiment]) -> str:
    rows = sorted(
        ({"key": e.key, "name": e.name, "splits": e.splits} for e in experiments),
        key=lambda row: row["key"],
    )
    return json.dumps(rows, sort_keys=True)


class UpdateListener:
    def __init__(
        self,
        ctx: LibraryContext,
        experiment_service: ExperimentService,
        user_service: UserService,
        variant_service: VariantService,
    ):
        self.ctx = ctx
        self.experiment_service = experiment_service
        self.user_service = user_service
        self.variant_service = variant_service
        self._adapter_unsubscribe: Optional[Unsubscribe] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._last_signature: Optional[str] = None

    @property
    def mode(self) -> str:
        if self._adapter_unsubscribe is not None:
            return "push"
        if self._poll_task is not None and not self._poll_task.done():
            return "poll"
        return "local-only"

    def start(self) -> Unsubscribe:
        """
        Subscribes to change notifications, or starts polling when the
        adapter cannot push. Setup failures are logged and leave the
        library in local-only mode. Returns the function that stops it.
        """
        capability = self.ctx.adapter.capability
        try:
            if isinstance(capability, PushCapable):
                self._adapter_unsubscribe = capability.subscribe(self._on_experiments)
            else:
                self._poll_task = asyncio.get_running_loop().create_task(
                    self._poll_loop(), name="experiment-poll"
                )
        except Exception as e:
            logger.warning(f"{RealtimeConnectionError('error')} Cause: {e}")
            return lambda: None

        logger.info(f"Listening for experiment updates ({self.mode})")
        return self.stop

    def stop(self) -> None:
        if self._adapter_unsubscribe is not None:
            unsubscribe, self._adapter_unsubscribe = self._adapter_unsubscribe, None
            try:
                unsubscribe()
            except Exception as e:
                logger.warning(f"Failed to unsubscribe from experiment updates: {e}")

        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    def _on_experiments(self, experiments: list[Experiment]) -> None:
        self.ctx.runner.submit(self.handle_experiments(experiments), name="experiment-update")

    async def handle_experiments(self, experiments: list[Experiment]) -> list[UserVariant]:
        """
        Applies a freshly delivered experiment set: invalidates the split
        cache of experiments that changed, replaces the registry, and assigns
        the initialized user (if any) to experiments it has no variant for.
        """
        enabled = [experiment for experiment in experiments if experiment.enabled]

        for key in self._changed_keys(enabled):
            self.ctx.normalizer.invalidate(key)
        self.ctx.registry.refresh(enabled)

        user = self.user_service.get_user()
        if user is None:
            return []

        assigned = await self.variant_service.assign_missing(user, enabled)
        if assigned:
            logger.info(
                f"Experiment update assigned {len(assigned)} new variant(s) to user {user.id}"
            )
        return assigned

    def _changed_keys(self, experiments: list[Experiment]) -> set[str]:
        incoming = {experiment.key: experiment for experiment in experiments}
        changed = set()
        for previous in self.ctx.registry.list():
            current = incoming.get(previous.key)
            if current is None or (current.name, current.splits) != (previous.name, previous.splits):
                changed.add(previous.key)
        return changed

    async def poll_once(self) -> bool:
        """Fetches the experiment list once; returns True if it was treated as changed."""
        try:
            experiments = await self.experiment_service.fetch_experiments()
        except Exception as e:
            logger.warning(f"Polling experiments failed: {e}")
            return False

        signature = experiments_signature(experiments)
        if signature == self._last_signature:
            return False

        logger.debug("Experiment set changed, re-running assignment")
        await self.handle_experiments(experiments)
        self._last_signature = signature
        return True

    async def _poll_loop(self) -> None:
        interval = self.ctx.settings.POLL_INTERVAL_SECONDS
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.opt(exception=e).error(f"Experiment update failed: {e}")
            await asyncio.sleep(interval)
