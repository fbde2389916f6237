"""In-process message bus for controller lifecycle events.

Each ``DeckController`` owns one ``MessageBus``; it is created with the
controller and cleared by ``DeckController.dispose()``.  Delivery is
synchronous and best-effort: a handler that raises is logged and the
remaining handlers still receive the event.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, Dict, List

from lofi_deck.services.shared.logging import get_logger

logger = get_logger("shared.events")

Handler = Callable[[Dict[str, Any]], None]


class MessageBus:
    """Topic → handlers broadcast channel.

    Usage::

        bus = MessageBus()
        unsubscribe = bus.on("crossfadeStart", lambda evt: print(evt["to"]))
        bus.emit("crossfadeStart", {"from": "A", "to": "B", "duration": 4})
        unsubscribe()
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def on(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Subscribe ``handler`` to ``topic``; returns an unsubscribe callable."""
        self._handlers[topic].append(handler)
        return lambda: self.off(topic, handler)

    def off(self, topic: str, handler: Handler) -> None:
        """Remove one subscription.  Unknown handlers are ignored."""
        handlers = self._handlers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, topic: str, payload: Dict[str, Any]) -> None:
        """Deliver ``payload`` to every subscriber of ``topic``."""
        # Copy so handlers may unsubscribe while being notified
        for handler in list(self._handlers.get(topic, ())):
            try:
                handler(payload)
            except Exception:  # noqa: BLE001
                logger.exception("Handler %r failed for topic '%s'", handler, topic)

    def subscriber_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, ()))

    def clear(self) -> None:
        """Drop every subscription."""
        self._handlers.clear()
