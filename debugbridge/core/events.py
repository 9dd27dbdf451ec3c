"""
Lifecycle notifications for the bridge service.

The service publishes what it does (launches, exits, forward changes,
status changes) on an EventBus; the CLI and tests subscribe. Publishing
never fails because of a subscriber.

    bus = EventBus()

    @bus.on(EventType.STATUS_CHANGED)
    async def show(event: Event):
        print(event.data["lines"])
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, TypeAlias

logger = logging.getLogger(__name__)

AsyncHandler: TypeAlias = Callable[["Event"], Coroutine[Any, Any, None]]


class EventType(str, Enum):
    SERVICE_STARTED = "service.started"
    SERVICE_STOPPING = "service.stopping"

    PROCESS_LAUNCHED = "process.launched"
    PROCESS_EXITED = "process.exited"
    LAUNCH_FAILED = "process.launch_failed"

    FORWARDS_RECONCILED = "forwards.reconciled"
    FORWARDS_CLEARED = "forwards.cleared"

    CONFIG_RELOADED = "config.reloaded"
    STATUS_CHANGED = "status.changed"


@dataclass(frozen=True)
class Event:
    type: EventType
    data: Any = None
    timestamp: float = field(default_factory=time.time)
    source: str = "bridge"


@dataclass
class Subscription:
    handler: AsyncHandler
    priority: int = 100  # lower runs first
    once: bool = False


class EventBus:
    """
    In-process pub/sub.

    Before start() (and after stop()) emit() delivers to subscribers
    before returning. While started, events go through a queue drained by
    one task, so a slow subscriber never stalls a lifecycle operation.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._subs: dict[EventType, list[Subscription]] = {}
        self._history: deque[Event] = deque(maxlen=max_history)
        self._counts: Counter[str] = Counter()
        self._queue: asyncio.Queue[Event] | None = None
        self._worker: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def subscribe(
        self,
        event_type: EventType,
        handler: AsyncHandler,
        priority: int = 100,
        once: bool = False,
    ) -> None:
        subs = self._subs.setdefault(event_type, [])
        subs.append(Subscription(handler, priority, once))
        subs.sort(key=lambda s: s.priority)

    def unsubscribe(self, event_type: EventType, handler: AsyncHandler) -> bool:
        subs = self._subs.get(event_type, [])
        kept = [s for s in subs if s.handler != handler]
        self._subs[event_type] = kept
        return len(kept) != len(subs)

    def on(self, event_type: EventType, priority: int = 100, once: bool = False) -> Callable[[AsyncHandler], AsyncHandler]:
        def register(handler: AsyncHandler) -> AsyncHandler:
            self.subscribe(event_type, handler, priority, once)
            return handler
        return register

    async def emit(self, event_type: EventType, data: Any = None, source: str = "bridge") -> Event:
        event = Event(type=event_type, data=data, source=source)
        self._counts["published"] += 1
        if self.running and self._queue is not None:
            self._queue.put_nowait(event)
        else:
            await self._deliver(event)
        return event

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._drain(), name="event-bus")

    async def stop(self, timeout: float = 5.0) -> None:
        """Deliver whatever is queued, then stop the worker."""
        worker, queue = self._worker, self._queue
        if worker is None or queue is None:
            return
        try:
            await asyncio.wait_for(queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Dropping %d undelivered events", queue.qsize())
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)
        self._worker = None
        self._queue = None

    async def _drain(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                await self._deliver(event)
            finally:
                queue.task_done()

    async def _deliver(self, event: Event) -> None:
        self._history.append(event)
        subs = self._subs.get(event.type, [])
        for sub in list(subs):
            try:
                await sub.handler(event)
            except Exception:
                self._counts["handler_errors"] += 1
                logger.exception("Subscriber %s failed on %s", getattr(sub.handler, "__name__", sub.handler), event.type.value)
                continue
            self._counts["delivered"] += 1
            if sub.once and sub in subs:
                subs.remove(sub)

    def get_history(self, event_type: EventType | None = None, limit: int = 100) -> list[Event]:
        events = [e for e in self._history if event_type is None or e.type == event_type]
        return events[-limit:]

    def get_stats(self) -> dict[str, int]:
        return {
            "events_published": self._counts["published"],
            "events_delivered": self._counts["delivered"],
            "handler_errors": self._counts["handler_errors"],
            "queue_size": self._queue.qsize() if self._queue else 0,
            "subscriber_count": sum(len(s) for s in self._subs.values()),
        }
