import json
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from loguru import logger

CONTROL_KEY = "control"
BOUNDARY_EPSILON = 1e-10


@dataclass(frozen=True)
class NormalizedSplit:
    key: str
    weight: float
    cumulative: float


def _clean_weight(raw: Any) -> Optional[float]:
    try:
        weight = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(weight) or weight < 0:
        return None
    return weight


def normalize_splits(splits: Mapping[str, Any]) -> list[NormalizedSplit]:
    """
    Converts a raw weight map into cumulative bucket boundaries.

    Entries are ordered by key so that boundaries do not depend on map
    ordering. Non-finite or negative weights are dropped; when nothing
    usable is left (or every weight is zero) a single "control" bucket
    covers [0, 1). The final boundary is always exactly 1.
    """
    entries = []
    for key, raw in (splits or {}).items():
        weight = _clean_weight(raw)
        if weight is not None:
            entries.append((str(key), weight))

    total = sum(weight for _, weight in entries)
    if not entries or total <= 0:
        return [NormalizedSplit(key=CONTROL_KEY, weight=1.0, cumulative=1.0)]

    entries.sort(key=lambda entry: entry[0])

    normalized: list[NormalizedSplit] = []
    cumulative = 0.0
    last_index = len(entries) - 1
    for i, (key, raw_weight) in enumerate(entries):
        weight = raw_weight / total
        if i == last_index:
            cumulative = 1.0
        else:
            cumulative = min(1.0, cumulative + weight + BOUNDARY_EPSILON)
        normalized.append(NormalizedSplit(key=key, weight=weight, cumulative=cumulative))

    return normalized


def splits_signature(experiment_key: str, splits: Mapping[str, Any]) -> tuple[str, str]:
    return experiment_key, json.dumps(splits or {}, sort_keys=True, default=str)


class SplitNormalizer:
    """Caches normalized splits per (experiment key, splits signature)."""

    def __init__(self):
        self._cache: dict[tuple[str, str], list[NormalizedSplit]] = {}

    def get(self, experiment_key: str, splits: Mapping[str, Any]) -> list[NormalizedSplit]:
        signature = splits_signature(experiment_key, splits)
        hit = self._cache.get(signature)
        if hit is not None:
            return hit

        normalized = normalize_splits(splits)
        self._cache[signature] = normalized
        return normalized

    def invalidate(self, experiment_key: Optional[str] = None) -> None:
        """Drops cached boundaries for one experiment, or for all of them."""
        if experiment_key is None:
            self._cache.clear()
            return

        stale = [signature for signature in self._cache if signature[0] == experiment_key]
        for signature in stale:
            del self._cache[signature]
        if stale:
            logger.debug(f"Invalidated normalized splits for experiment '{experiment_key}'")

    def __len__(self) -> int:
        return len(self._cache)
