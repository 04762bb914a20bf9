from typing import Callable

from loguru import logger

OnlineListener = Callable[[], None]


class ConnectivityMonitor:
    """
    Holds the current online/offline state of this environment.

    Whatever owns network detection calls `set_online`; an offline -> online
    transition notifies every registered listener.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: list[OnlineListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_online_listener(self, listener: OnlineListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Connectivity restored, pending sync operations will be processed")
            for listener in list(self._listeners):
                listener()
        elif was_online and not online:
            logger.info("Connectivity lost, writes will be queued for later sync")
