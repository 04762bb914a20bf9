from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Union

from ablib.models.schemas.assignment import UserVariant
from ablib.models.schemas.experiment import Experiment
from ablib.models.schemas.user import Identity

ExperimentsCallback = Callable[[list[Experiment]], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class PushCapable:
    """The adapter delivers the full experiment set whenever it changes."""

    subscribe: Callable[[ExperimentsCallback], Unsubscribe]


@dataclass(frozen=True)
class PollOnly:
    """No change notifications; the update listener polls instead."""


AdapterCapability = Union[PushCapable, PollOnly]


class RemoteStorageAdapter(ABC):
    """
    Contract between the library and the authoritative remote store.

    Implementations raise AdapterError (or another NetworkError) when the
    transport fails. Saves are upserts: the remote store resolves
    concurrent writes to the same (user_id, experiment_key) by last
    writer wins.
    """

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Identity]: ...

    @abstractmethod
    async def save_user(self, identity: Identity) -> Optional[Identity]: ...

    @abstractmethod
    async def get_experiments(self) -> list[Experiment]:
        """Returns only enabled experiments."""

    @abstractmethod
    async def get_variants_by_user_id(self, user_id: str) -> Optional[list[UserVariant]]: ...

    @abstractmethod
    async def get_variant(self, user_id: str, experiment_key: str) -> Optional[UserVariant]: ...

    @abstractmethod
    async def save_variant(self, user_id: str, experiment_key: str, variant: str) -> None: ...

    @property
    def capability(self) -> AdapterCapability:
        return PollOnly()
