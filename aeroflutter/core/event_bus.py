"""Publish-subscribe bus for flutter search progress.

The flutter solver publishes one event per velocity sample, crossover
bracket, bisection iterate and converged root.  Handlers receive the
payload dict with the event name added under ``"event"`` so that a single
wildcard (``"*"``) subscriber can record everything.
"""
from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], None]

WILDCARD = "*"


class EventBus:
    def __init__(self, keep_history: bool = False, max_history: Optional[int] = 10000):
        self._subscribers: dict[str, list[EventHandler]] = {}
        self._keep_history = keep_history
        self._history: deque = deque(maxlen=max_history)

    def subscribe(self, event: str, handler: EventHandler) -> None:
        self._subscribers.setdefault(event, []).append(handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> None:
        if event in self._subscribers:
            self._subscribers[event] = [
                h for h in self._subscribers[event] if h is not handler
            ]

    def emit(self, event: str, data: Optional[dict] = None) -> None:
        payload = dict(data or {})
        payload["event"] = event
        if self._keep_history:
            self._history.append({
                "event": event,
                "data": payload,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })

        handlers = list(self._subscribers.get(event, []))
        if event != WILDCARD:
            handlers.extend(self._subscribers.get(WILDCARD, []))

        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("Event handler error for %s", event)

    def get_history(self, prefix: str = "") -> list[dict]:
        """Recorded events, optionally only those whose name starts with *prefix*."""
        return [r for r in self._history if r["event"].startswith(prefix)]

    def clear_history(self) -> None:
        self._history.clear()
