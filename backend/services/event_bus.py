"""In-process publish/subscribe for loop events.

Publishing never blocks on or fails because of a subscriber: callbacks
run as background tasks and their errors are logged.
"""

import asyncio
import inspect
from typing import Any, Callable

from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("event_bus")

# Subscribe with this name to receive every event
ALL_EVENTS = "*"


class EventBus:
    def __init__(self):
        self._subscribers: dict[str, list[Callable]] = {}
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """Register ``callback(event_type, data)`` (sync or async)."""
        callbacks = self._subscribers.setdefault(event_type, [])
        if callback not in callbacks:
            callbacks.append(callback)

    def unsubscribe(self, event_type: str, callback: Callable) -> None:
        callbacks = self._subscribers.get(event_type) or []
        if callback in callbacks:
            callbacks.remove(callback)

    def publish(self, event_type: str, data: Any = None) -> None:
        """Fire-and-forget delivery to matching and wildcard subscribers."""
        callbacks = list(self._subscribers.get(event_type) or [])
        if event_type != ALL_EVENTS:
            callbacks.extend(self._subscribers.get(ALL_EVENTS) or [])
        if not callbacks:
            return

        payload = data if data is not None else {}
        for callback in callbacks:
            try:
                result = callback(event_type, payload)
            except Exception as e:
                logger.error("Event subscriber failed", event=event_type, error=str(e))
                continue
            if inspect.isawaitable(result):
                self._schedule(event_type, result)

    def _schedule(self, event_type: str, awaitable) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError as e:
            # No running loop (sync caller outside asyncio)
            logger.warning("Dropped async event delivery", event=event_type, error=str(e))
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_delivered(event_type, t))

    def _on_delivered(self, event_type: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Event subscriber failed", event=event_type, error=str(exc))

    async def drain(self) -> None:
        """Wait for in-flight async deliveries (used on shutdown and in tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def event_envelope(event_type: str, data: Any) -> dict:
    """Wire shape pushed to WebSocket clients"""
    return {"type": event_type, "data": data, "timestamp": utcnow().isoformat() + "Z"}
