"""Publish/subscribe of immutable snapshots."""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Generic, TypeVar

from .common.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class SnapshotBroadcaster(Generic[T]):
    """Holds the latest value and tells subscribers when it changes.

    Values are expected to be immutable (frozen pydantic models); consumers
    never get a live reference to supervisor state. ``publish`` must be
    called from the event loop thread.
    """

    def __init__(self, initial: T):
        self._value = initial
        self._version = 0
        self._callbacks: list[Callable[[T], None]] = []
        self._waiters: set[asyncio.Event] = set()

    @property
    def value(self) -> T:
        return self._value

    @property
    def version(self) -> int:
        return self._version

    def publish(self, value: T) -> None:
        self._value = value
        self._version += 1
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception as e:
                logger.error("Snapshot subscriber failed", error=str(e))
        for event in self._waiters:
            event.set()

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register ``callback`` for every future publish.

        Returns:
            A function that removes the subscription
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def updates(self) -> AsyncIterator[T]:
        """Yield the current value, then the latest value after each change.

        Slow consumers skip intermediate values rather than queueing them.
        """
        event = asyncio.Event()
        self._waiters.add(event)
        try:
            seen = self._version
            yield self._value
            while True:
                await event.wait()
                event.clear()
                if self._version != seen:
                    seen = self._version
                    yield self._value
        finally:
            self._waiters.discard(event)
