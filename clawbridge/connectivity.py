"""Observable connectivity flag for the gateway bridge."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable

logger = logging.getLogger(__name__)


class ConnectivitySignal:
    """Boolean signal that notifies subscribers only on real changes.

    Subscribers never receive a replay of the current value; they see the
    transitions that happen after they subscribe.
    """

    def __init__(self, initial: bool = False):
        self._value = initial
        self._callbacks: list[Callable[[bool], None]] = []
        self._queues: list[asyncio.Queue[bool]] = []

    @property
    def value(self) -> bool:
        return self._value

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Register a callback and return a function that removes it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def publish(self, value: bool) -> bool:
        """Set the value; returns True if subscribers were notified."""
        if value == self._value:
            return False
        self._value = value
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception:
                logger.exception("Connectivity subscriber failed")
        for queue in list(self._queues):
            queue.put_nowait(value)
        return True

    def changes(self) -> AsyncIterator[bool]:
        """Iterate over every change published after this call.

        The queue is registered immediately, so changes published before the
        first ``__anext__`` are still delivered. Close the iterator (or let an
        ``async for`` finish) to unregister it.
        """
        queue: asyncio.Queue[bool] = asyncio.Queue()
        self._queues.append(queue)
        return self._iterate(queue)

    async def _iterate(self, queue: asyncio.Queue[bool]) -> AsyncIterator[bool]:
        try:
            while True:
                yield await queue.get()
        finally:
            if queue in self._queues:
                self._queues.remove(queue)
