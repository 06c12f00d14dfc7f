"""Engine-scoped publish/subscribe channel.

Each ``TradingEngine`` owns one ``EventBus``; nothing is global.  A failing
subscriber is logged and skipped so it can never stall tick or settlement
handling.
"""

import logging
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger("zentrade.events")


class EngineEvent(str, Enum):
    TICK = "tick"
    TRADE = "trade"
    STATUS = "status"
    ERROR = "error"
    RESET = "reset"
    SWITCH = "switch"
    BALANCE = "balance"
    CONNECTION = "connection"


class EventBus:
    """Callback registry keyed by ``EngineEvent``."""

    def __init__(self) -> None:
        self._subscribers: dict[EngineEvent, list[Callable[[Any], None]]] = {
            event: [] for event in EngineEvent
        }

    def on(self, event: EngineEvent | str, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Register *callback* for *event*.

        Returns:
            A zero-argument function that removes the registration.

        Raises:
            ValueError: If *event* is not a known event name.
        """
        key = EngineEvent(event)
        self._subscribers[key].append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers[key]:
                self._subscribers[key].remove(callback)

        return _unsubscribe

    def emit(self, event: EngineEvent, payload: Any = None) -> None:
        for callback in list(self._subscribers[event]):
            try:
                callback(payload)
            except Exception:
                logger.exception("Subscriber for %s event failed", event.value)

    def subscriber_count(self, event: EngineEvent) -> int:
        return len(self._subscribers[event])
