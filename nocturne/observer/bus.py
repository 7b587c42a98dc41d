"""
nocturne/observer/bus.py

Purpose:
    Asynchronous publish/subscribe bus for engine notifications.

    - Handles both sync and async subscribers.
    - Failures in listeners never propagate to the emitter.
    - publish() is fire-and-forget; drain() waits for in-flight deliveries.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Set, Union

from nocturne.utils.async_helpers import create_safe_task

from .events import EventKind, NocturneEvent

log = logging.getLogger(__name__)

Subscriber = Union[
    Callable[[NocturneEvent], None],
    Callable[[NocturneEvent], Awaitable[None]],
]


class EventBus:
    def __init__(self):
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, kind: EventKind | str, callback: Subscriber) -> None:
        """
        Register a callback for a specific event kind.
        Use "*" for all events.
        """
        key = kind.value if isinstance(kind, EventKind) else kind
        self._subscribers[key].append(callback)
        func_name = getattr(callback, "__name__", str(callback))
        log.debug(f"[EventBus] Subscribed {func_name} to {key}")

    def unsubscribe(self, kind: EventKind | str, callback: Subscriber) -> None:
        key = kind.value if isinstance(kind, EventKind) else kind
        if callback in self._subscribers.get(key, []):
            self._subscribers[key].remove(callback)

    async def emit(self, event: NocturneEvent) -> None:
        """Deliver an event to all interested subscribers and wait for them."""
        callbacks = self._subscribers.get(event.kind.value, []) + self._subscribers.get("*", [])
        if callbacks:
            await asyncio.gather(*(self._invoke(cb, event) for cb in callbacks))

    def publish(self, event: NocturneEvent) -> None:
        """Schedule delivery without waiting for it."""
        task = create_safe_task(self.emit(event), name=f"publish:{event.kind.value}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait until every published event has been delivered."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _invoke(self, callback: Subscriber, event: NocturneEvent) -> None:
        try:
            if inspect.iscoroutinefunction(callback):
                await callback(event)
            else:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
        except Exception as e:
            func_name = getattr(callback, "__name__", str(callback))
            log.error(f"[EventBus] Subscriber error ({func_name}): {e}", exc_info=True)

    def clear(self) -> None:
        """Reset subscribers."""
        self._subscribers.clear()
