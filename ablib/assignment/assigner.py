from typing import Any, Callable, Mapping

from ablib.assignment.hashing import HashingConfig, bucket_with_salt
from ablib.assignment.splits import SplitNormalizer
from ablib.models.schemas.user import Identity


class VariantAssigner:
    """Picks a variant key for an identity/experiment pair."""

    def __init__(
        self,
        normalizer: SplitNormalizer,
        hashing_config: Callable[[], HashingConfig],
    ):
        self.normalizer = normalizer
        # Read on every call so a later hashing change applies immediately
        self._hashing_config = hashing_config

    def assign(self, identity: Identity, experiment_key: str, splits: Mapping[str, Any]) -> str:
        """
        Returns the first bucket whose cumulative boundary exceeds the
        identity's hash position, or the last bucket if none does.

        Raises:
            ValueError: if normalization produced no buckets at all.
        """
        buckets = self.normalizer.get(experiment_key, splits)
        if not buckets:
            raise ValueError(f"Experiment '{experiment_key}' has no variant buckets.")

        r = bucket_with_salt(identity.id, identity.email, experiment_key, self._hashing_config())
        for b in buckets:
            if r < b.cumulative:
                return b.key

        return buckets[-1].key
