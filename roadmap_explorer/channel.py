"""
In-process publish/subscribe channel for generation progress messages.

Delivery is synchronous, in subscription order, and best-effort: a
handler that raises is logged and skipped, the remaining handlers still
receive the message.
"""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

PROGRESS_TOPIC = "roadmap-progress"

Handler = Callable[[Dict[str, Any]], None]


class ProgressChannel:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *topic*; returns an unsubscribe callable."""
        self._handlers[topic].append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def publish(self, topic: str, message: Dict[str, Any]) -> int:
        """Dispatch *message* to every handler of *topic*.

        Returns the number of handlers that ran without raising.
        """
        delivered = 0
        # Copy: handlers may unsubscribe while being dispatched.
        for handler in list(self._handlers.get(topic, [])):
            try:
                handler(message)
                delivered += 1
            except Exception:
                logger.exception("Handler failed on topic %s.", topic)
        return delivered

    def subscriber_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, []))
