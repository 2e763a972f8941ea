"""Notification bus for reconciler events.

The coordinator publishes ``empathy.*`` notifications here and returns
immediately; a background task fans each one out to subscribers and,
when configured, to an audit persister. Subscriber failures are logged
and isolated from each other and from the reconciler.

A notification is addressed to the users named in its payload
(``for_user_id``, ``guesser_id``/``subject_id`` or ``user_ids``);
subscribers can filter on that through ``Event.recipients``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]

# Subscribe to every event type
ANY_EVENT = "*"

_STOP = object()


@dataclass
class Event:
    type: str
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def recipients(self) -> list[str]:
        """Users this notification is meant for, in payload order."""
        if "for_user_id" in self.data:
            return [self.data["for_user_id"]]
        if "user_ids" in self.data:
            return list(self.data["user_ids"])
        return [uid for uid in (self.data.get("guesser_id"), self.data.get("subject_id")) if uid]


class EventBus:
    """Bounded, fire-and-forget notification bus.

    ``publish``/``emit`` never block and never raise: when the queue is
    full the event is dropped with a warning. ``stop`` delivers whatever
    is still queued before returning.
    """

    def __init__(self, max_queue: int = 1000) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None
        self._persister: EventHandler | None = None
        self.dropped = 0

    def on(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)
        logger.debug("Subscribed %s to %s", handler.__qualname__, event_type)

    def set_db_persister(self, persister: EventHandler) -> None:
        self._persister = persister

    async def emit(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Notification queue full, dropping %s for session %s", event.type, event.session_id)

    async def publish(self, session_id: str, event_name: str, payload: dict[str, Any]) -> None:
        await self.emit(Event(type=event_name, session_id=session_id, data=dict(payload)))

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(self._run(), name="notification-bus")
        logger.info("Notification bus started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        # The sentinel goes behind everything already queued
        await self._queue.put(_STOP)
        await self._worker
        self._worker = None
        logger.info("Notification bus stopped (%d dropped)", self.dropped)

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            try:
                await self._deliver(item)
            except Exception:
                logger.exception("Unexpected error delivering %s", item.type)

    async def _deliver(self, event: Event) -> None:
        if self._persister is not None:
            try:
                await self._persister(event)
            except Exception:
                logger.warning("Persisting %s failed", event.type, exc_info=True)

        handlers = self._handlers.get(event.type, []) + self._handlers.get(ANY_EVENT, [])
        if handlers:
            await asyncio.gather(*(self._call(h, event) for h in handlers))

    @staticmethod
    async def _call(handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Handler %s failed for %s", handler.__qualname__, event.type)

    @property
    def pending(self) -> int:
        return self._queue.qsize()
