from __future__ import annotations

import logging
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

NetworkListener = Callable[[bool], None]
Unsubscribe = Callable[[], None]


class NetworkMonitor(Protocol):
    def is_online(self) -> bool: ...

    def on_status_change(self, callback: NetworkListener) -> Unsubscribe: ...


class SimpleNetworkMonitor:
    """Online flag driven by the host application (e.g. OS connectivity events)."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[NetworkListener] = []

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.warning("network listener failed online=%s", online, exc_info=True)

    def on_status_change(self, callback: NetworkListener) -> Unsubscribe:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe


class DisabledNetworkMonitor:
    # Used when sync is not configured: always offline, never notifies.

    def is_online(self) -> bool:
        return False

    def on_status_change(self, callback: NetworkListener) -> Unsubscribe:
        return lambda: None
