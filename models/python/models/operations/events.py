"""In-process order events and background work.

The orchestrator publishes events after a transaction commits; subscribers
(reputation recompute) run derived work. Subscriber errors are logged and
never reach the publisher, since the primary transition is already durable.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Coroutine, Dict, List, Optional, Set, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderReachedTerminal:
    order_id: str
    status: str
    buyer_id: str
    seller_id: str
    courier_id: Optional[str] = None


@dataclass(frozen=True)
class CourierDropped:
    order_id: str
    courier_id: str


Handler = Callable[[object], Awaitable[None]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: Dict[Type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Handler) -> None:
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)

    async def publish(self, event: object) -> None:
        for handler in list(self._handlers[type(event)]):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    f"Event handler {getattr(handler, '__name__', handler)} failed for {event}: {e}",
                    exc_info=True,
                )


order_events = EventBus()


# ---------------------------------------------------------------------------
# Background tasks (matching runs outside the request's transaction)
# ---------------------------------------------------------------------------

_background_tasks: Set[asyncio.Task] = set()


def spawn(coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_task_done)
    return task


def _on_task_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)


async def background_drain() -> None:
    """Wait until every spawned task, including ones spawned meanwhile, is done."""
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)
