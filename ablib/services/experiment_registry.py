from typing import Optional

from ablib.core.errors import ExperimentNotFoundError
from ablib.models.schemas.experiment import Experiment


class ExperimentRegistry:
    """In-memory map of the currently known experiments, keyed by `key`."""

    def __init__(self):
        self._experiments: dict[str, Experiment] = {}

    def refresh(self, experiments: list[Experiment]) -> None:
        """Replaces the whole registry."""
        self._experiments = {experiment.key: experiment for experiment in experiments}

    def register(self, experiment: Experiment) -> None:
        self._experiments[experiment.key] = experiment

    def get(self, key: str) -> Experiment:
        experiment = self._experiments.get(key)
        if experiment is None:
            raise ExperimentNotFoundError(key)
        return experiment

    def find(self, key: str) -> Optional[Experiment]:
        return self._experiments.get(key)

    def list(self) -> list[Experiment]:
        return list(self._experiments.values())

    def clear(self) -> None:
        self._experiments = {}

    def __len__(self) -> int:
        return len(self._experiments)
