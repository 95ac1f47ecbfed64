"""
Event service for the time-lapse appliance.
In-process publish/subscribe bus plus the periodic background tasks.
"""
import asyncio
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Tuple

import structlog

logger = structlog.get_logger().bind(component="EventService")


class EventService:
    """Service for background tasks and internal event fan-out."""

    def __init__(self):
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._event_handlers: Dict[str, List[Callable]] = {}
        self._periodic: List[Tuple[str, float, Callable[[], Awaitable[None]]]] = []

        # Event counters for debugging
        self.event_counts: Counter = Counter()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the event service and its periodic tasks."""
        if self._running:
            logger.warning("Event service already running")
            return

        self._running = True
        logger.info("Starting event service")

        for name, interval, job in self._periodic:
            self._tasks.append(asyncio.create_task(self._periodic_task(name, interval, job)))

        logger.info("Event service started", tasks=len(self._tasks))

    async def stop(self) -> None:
        """Stop the event service and cancel all tasks."""
        if not self._running:
            return

        logger.info("Stopping event service")
        self._running = False

        for task in self._tasks:
            if not task.done():
                task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        logger.info("Event service stopped")

    def add_periodic_task(self, name: str, interval: float, job: Callable[[], Awaitable[None]]) -> None:
        """Register ``job`` to run every ``interval`` seconds while the service runs."""
        self._periodic.append((name, interval, job))
        if self._running:
            self._tasks.append(asyncio.create_task(self._periodic_task(name, interval, job)))

    def subscribe(self, event_type: str, handler: Callable) -> None:
        """Subscribe to event notifications."""
        if event_type not in self._event_handlers:
            self._event_handlers[event_type] = []
        self._event_handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: Callable) -> None:
        """Unsubscribe from event notifications."""
        if event_type in self._event_handlers:
            if handler in self._event_handlers[event_type]:
                self._event_handlers[event_type].remove(handler)

    async def emit_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """Emit an event to all subscribers, in subscription order."""
        self.event_counts[event_type] += 1

        handlers = self._event_handlers.get(event_type, []).copy()
        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(data)
                else:
                    handler(data)
            except Exception as e:
                logger.error("Error in event handler",
                             event_type=event_type, error=str(e), error_type=type(e).__name__)

    async def _periodic_task(self, name: str, interval: float, job: Callable[[], Awaitable[None]]):
        logger.info("Starting periodic task", task=name, interval=interval)
        while self._running:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Periodic task failed", task=name, error=str(e),
                             error_type=type(e).__name__)
            await asyncio.sleep(interval)
