"""In-process publish/subscribe bus for pipeline notifications."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Type


@dataclass(kw_only=True)
class Event:
    """Base event class."""
    timestamp: datetime = field(default_factory=datetime.now)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class Subscription:
    """Handle returned by subscribe(); can be used to unsubscribe."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: Type = Event
    handler: Callable = field(default=lambda e: None)
    active: bool = True

    def cancel(self):
        self.active = False


class EventBus:
    """Dispatch events to subscribers on the publishing thread.

    Plain callables run inline.  Coroutine functions are scheduled as tasks
    on the running event loop; when no loop is running they are skipped
    with a warning.
    """

    def __init__(self, logger: logging.Logger = None):
        self._logger = logger or logging.getLogger(__name__)
        self._handlers: Dict[Type[Event], List[Subscription]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: Type[Event], handler: Callable) -> Subscription:
        sub = Subscription(event_type=event_type, handler=handler)
        self._handlers[event_type].append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription):
        subscription.active = False
        subs = self._handlers.get(subscription.event_type, [])
        try:
            subs.remove(subscription)
        except ValueError:
            pass

    def publish(self, event: Event):
        event_type = type(event)
        for sub in list(self._handlers[event_type]):
            if not sub.active:
                continue
            if inspect.iscoroutinefunction(sub.handler):
                self._schedule(sub.handler, event)
                continue
            try:
                sub.handler(event)
            except Exception as e:
                self._logger.error(f"Handler failed for {event_type.__name__}: {e}")

    def _schedule(self, handler, event):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.warning(
                "No running loop; dropping async handler for %s", type(event).__name__
            )
            return
        task = loop.create_task(self._safe_async_call(handler, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _safe_async_call(self, handler, event):
        try:
            await handler(event)
        except Exception as e:
            self._logger.error(f"Async handler failed: {e}")

    async def drain(self):
        """Wait until every scheduled async handler has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
