# services/experiment_service.py

from loguru import logger

from ablib.core.context import LibraryContext
from ablib.core.errors import GetExperimentsError
from ablib.models.schemas.experiment import Experiment


class ExperimentService:
    """Experiments are remote-authoritative reference data; there is no local fallback."""

    def __init__(self, ctx: LibraryContext):
        self.ctx = ctx

    async def fetch_experiments(self) -> list[Experiment]:
        """
        Pulls the enabled experiments from the remote store without touching
        the registry.

        Raises:
            GetExperimentsError: the adapter call failed.
        """
        try:
            experiments = await self.ctx.adapter.get_experiments()
        except Exception as e:
            raise GetExperimentsError(str(e)) from e

        return [experiment for experiment in experiments or [] if experiment.enabled]

    async def get_experiments(self) -> list[Experiment]:
        """Pulls the enabled experiments and replaces the registry with them."""
        experiments = await self.fetch_experiments()
        self.ctx.registry.refresh(experiments)
        logger.debug(f"Experiment registry refreshed with {len(experiments)} experiments")
        return experiments
