"""
Fan-out of one producer to many async iterators.
"""

from __future__ import annotations

import asyncio
from typing import Generic, List, Optional, TypeVar

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """Async iterator over the items published after it was created."""

    def __init__(self, broadcast: "Broadcast[T]"):
        self._broadcast = broadcast
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self.close()
            raise StopAsyncIteration
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop receiving items; the iterator finishes once drained."""
        if self._done:
            return
        self._done = True
        self._broadcast._detach(self)


class Broadcast(Generic[T]):
    """
    Every subscriber gets its own queue and sees items in publish order,
    starting from the moment it subscribed. Once closed, existing iterators
    drain and finish and new ones finish immediately.
    """

    def __init__(self, replay_last: bool = False):
        self._subscriptions: List[Subscription[T]] = []
        self._closed = False
        self._replay_last = replay_last
        self._last: Optional[T] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, item: T) -> None:
        if self._closed:
            return
        self._last = item
        for subscription in self._subscriptions:
            subscription._queue.put_nowait(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription._queue.put_nowait(_CLOSED)

    def subscribe(self) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(self)
        if self._replay_last and self._last is not None:
            subscription._queue.put_nowait(self._last)
        if self._closed:
            subscription._queue.put_nowait(_CLOSED)
        else:
            self._subscriptions.append(subscription)
        return subscription

    def _detach(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
