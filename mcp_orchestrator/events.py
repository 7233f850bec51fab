#!/usr/bin/env python3
"""
Minimal publish/subscribe used by the state machine, registry and supervisor.

Listener invocations are isolated: a listener that raises is logged and the
remaining listeners are still notified. Coroutine listeners are scheduled as
tasks on the running loop.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Generic, List, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class EventEmitter(Generic[T]):

    def __init__(self, name: str = "events"):
        self.name = name
        self._listeners: List[Callable[[T], Any]] = []
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, listener: Callable[[T], Any]) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def emit(self, event: T) -> None:
        # Snapshot so listeners may unsubscribe while being notified
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    self._track(asyncio.ensure_future(result))
            except Exception:
                logger.exception(f"Listener {getattr(listener, '__name__', listener)!r} failed on {self.name}")

    def _track(self, task: asyncio.Future) -> None:
        self._tasks.add(task)

        def _done(t: asyncio.Future) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Async listener failed on {self.name}: {t.exception()!r}")

        task.add_done_callback(_done)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
