"""
Change notifications for the UI layer.

Writers and hydrators announce every change to local totals or history
through an ``EventEmitter`` owned by the engine. Subscribers get a typed
``SyncEvent`` rather than an ad hoc payload.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .models import DailyAggregate

logger = logging.getLogger(__name__)


class EventDomain(str, Enum):
    CONSUMED = "consumed"
    BURNED = "burned"
    WORKOUT_HISTORY = "workout_history"
    MEAL_HISTORY = "meal_history"


@dataclass(frozen=True)
class SyncEvent:
    domain: EventDomain
    day: str
    totals: DailyAggregate = field(default_factory=DailyAggregate)

    @property
    def consumed(self) -> int:
        return round(self.totals.consumed)

    @property
    def burned(self) -> int:
        return round(self.totals.burned)


Listener = Callable[[SyncEvent], None]


class EventEmitter:
    """Synchronous observer registry keyed by event domain."""

    def __init__(self):
        self._listeners: list[tuple[Optional[EventDomain], Listener]] = []

    def subscribe(
        self,
        listener: Listener,
        domain: Optional[EventDomain] = None,
    ) -> Callable[[], None]:
        """
        Register a listener for one domain, or every domain when omitted.

        Returns:
            Callable that removes the subscription
        """
        entry = (domain, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def emit(self, event: SyncEvent) -> None:
        for domain, listener in list(self._listeners):
            if domain is not None and domain != event.domain:
                continue
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener failed for {event.domain.value} event: {e}")

    def emit_totals(self, day: str, totals: DailyAggregate, *domains: EventDomain) -> None:
        """Emit one totals event per domain (both consumed and burned by default)."""
        for domain in domains or (EventDomain.CONSUMED, EventDomain.BURNED):
            self.emit(SyncEvent(domain=domain, day=day, totals=totals))
