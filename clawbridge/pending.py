"""Tracking for requests that are waiting on a gateway reply."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .errors import BridgeError, RequestSuperseded
from .protocol import Response

logger = logging.getLogger(__name__)


class PendingRequest:
    """One outstanding request and its write-once result slot.

    The first resolution wins, whether it is a reply, a failure, a timeout or
    a disconnect. Every later attempt is a no-op that returns False.
    """

    def __init__(self, request_id: Optional[str], future: asyncio.Future, deadline: float):
        self.request_id = request_id
        self.future = future
        self.deadline = deadline
        self.failure: Optional[BridgeError] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def label(self) -> str:
        return self.request_id or "current request"

    @property
    def done(self) -> bool:
        return self.future.done()

    def arm_timer(self, timer: asyncio.TimerHandle) -> None:
        self._timer = timer

    def cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _settle(self, value: Optional[Response]) -> bool:
        if self.future.done():
            return False
        self.cancel_timer()
        self.future.set_result(value)
        return True

    def resolve(self, response: Response) -> bool:
        return self._settle(response)

    def fail(self, reason: BridgeError) -> bool:
        if not self._settle(None):
            return False
        self.failure = reason
        logger.debug("Request %s resolved with failure (%s): %s", self.label, reason.code, reason)
        return True


class KeyedRegistry:
    """Any number of pending requests, keyed by request id."""

    def __init__(self):
        self._requests: dict[str, PendingRequest] = {}

    def register(self, request: PendingRequest) -> None:
        if request.request_id is None:
            raise ValueError("Keyed requests need a request id")
        if request.request_id in self._requests:
            raise ValueError(f"Duplicate request id: {request.request_id}")
        self._requests[request.request_id] = request

    def take(self, request_id: Optional[str]) -> Optional[PendingRequest]:
        if request_id is None:
            return None
        return self._requests.pop(request_id, None)

    def discard(self, request: PendingRequest) -> None:
        if self._requests.get(request.request_id) is request:
            del self._requests[request.request_id]

    def drain(self) -> list[PendingRequest]:
        requests = list(self._requests.values())
        self._requests.clear()
        return requests

    def __len__(self) -> int:
        return len(self._requests)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._requests


class SingleSlotRegistry:
    """At most one pending request; replies are not keyed."""

    def __init__(self):
        self._current: Optional[PendingRequest] = None

    def register(self, request: PendingRequest) -> None:
        previous = self._current
        if previous is not None and not previous.done:
            previous.fail(RequestSuperseded("Superseded by a newer message"))
        self._current = request

    def take(self, request_id: Optional[str] = None) -> Optional[PendingRequest]:
        request, self._current = self._current, None
        return request

    def discard(self, request: PendingRequest) -> None:
        if self._current is request:
            self._current = None

    def drain(self) -> list[PendingRequest]:
        request = self.take()
        return [request] if request is not None else []

    @property
    def current(self) -> Optional[PendingRequest]:
        return self._current

    def __len__(self) -> int:
        return 1 if self._current is not None else 0
