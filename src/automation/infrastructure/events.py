"""
Lifecycle Event Bus
===================

In-process fan-out of ticket lifecycle events.

Producers (ticket service webhooks, the /automation/events endpoint) call
`publish()` and return immediately; each subscriber runs in its own task so
a slow automation pass never blocks the ticket mutation that caused it.
"""

import asyncio
from typing import Awaitable, Callable, List, Set

from src.automation.domain import LifecycleEvent
from src.shared.infrastructure.logging import get_logger


logger = get_logger(__name__)

EventHandler = Callable[[LifecycleEvent], Awaitable[object]]


class LifecycleEventBus:
    """Fire-and-forget publisher with tracked background tasks."""

    def __init__(self):
        self._handlers: List[EventHandler] = []
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def publish(self, event: LifecycleEvent) -> List[asyncio.Task]:
        """
        Schedule every subscriber for the event.

        Must be called from within a running event loop.
        """
        tasks = []
        for handler in self._handlers:
            task = asyncio.create_task(self._run(handler, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight handlers (used on shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @staticmethod
    async def _run(handler: EventHandler, event: LifecycleEvent) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception(
                "Lifecycle event handler failed",
                extra={"event_type": event.type.value, "ticket_id": event.ticket_id}
            )
