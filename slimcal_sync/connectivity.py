"""
Connectivity and visibility signals.

The engine never probes the network on its own; whoever embeds it reports
online/offline and foreground/background transitions here, and the queue
flusher and bootstrap orchestrator react to the "regained" edges.
"""

import logging
from enum import Enum
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class Signal(str, Enum):
    ONLINE = "online"
    VISIBLE = "visible"
    FOCUS = "focus"


SignalListener = Callable[[], Awaitable[None]]


class ConnectivityMonitor:
    """Holds the online/visible flags and fans out regained-signal callbacks."""

    def __init__(self, online: bool = True, visible: bool = True):
        self._online = online
        self._visible = visible
        self._listeners: dict[Signal, list[SignalListener]] = {s: [] for s in Signal}

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_visible(self) -> bool:
        return self._visible

    def add_listener(self, signal: Signal, listener: SignalListener) -> Callable[[], None]:
        """Subscribe to a signal. Returns a callable that unsubscribes."""
        self._listeners[signal].append(listener)

        def remove() -> None:
            if listener in self._listeners[signal]:
                self._listeners[signal].remove(listener)

        return remove

    async def set_online(self, online: bool) -> None:
        was_online, self._online = self._online, online
        if online and not was_online:
            logger.info("Connectivity regained")
            await self._fire(Signal.ONLINE)
        elif not online and was_online:
            logger.info("Connectivity lost")

    async def set_visible(self, visible: bool) -> None:
        was_visible, self._visible = self._visible, visible
        if visible and not was_visible:
            await self._fire(Signal.VISIBLE)

    async def notify_focus(self) -> None:
        await self._fire(Signal.FOCUS)

    async def _fire(self, signal: Signal) -> None:
        for listener in list(self._listeners[signal]):
            try:
                await listener()
            except Exception as e:
                logger.error(f"{signal.value} listener failed: {e}")
