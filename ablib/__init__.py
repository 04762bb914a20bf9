"""Offline-first deterministic variant assignment for A/B experiments."""

from ablib.adapters.base import PollOnly, PushCapable, RemoteStorageAdapter
from ablib.assignment.hashing import HashingConfig
from ablib.client import (
    ABTestingClient,
    get_client,
    get_variant,
    initialize_library,
    initialize_user,
    shutdown_library,
    update_user,
)
from ablib.models.schemas.assignment import UserVariant
from ablib.models.schemas.experiment import Experiment
from ablib.models.schemas.user import Identity

__all__ = [
    "ABTestingClient",
    "Experiment",
    "HashingConfig",
    "Identity",
    "PollOnly",
    "PushCapable",
    "RemoteStorageAdapter",
    "UserVariant",
    "get_client",
    "get_variant",
    "initialize_library",
    "initialize_user",
    "shutdown_library",
    "update_user",
]
