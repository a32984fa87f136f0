"""
Observable: minimal snapshot + change-notification store.

Subclasses hold their state, mutate it, then call _emit(). Listeners take no
arguments and read snapshot() themselves, so any UI layer (or a test) can
bind to them. A listener that raises is logged and skipped; it never blocks
the others.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Coroutine

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class Observable(ABC):
    """Listener-set base for the client stores."""

    def __init__(self):
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self):
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error("%s listener failed: %s", self.__class__.__name__, e)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        """
        Run async follow-up work from a (synchronous) listener on the current
        loop. Raises RuntimeError outside a running loop.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            raise
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @abstractmethod
    def snapshot(self):
        ...
