"""Trigger coalescing and the resettable timer it runs on."""

import asyncio
from collections.abc import Callable

from ..common.logging import get_logger
from .models import TriggerKind, TriggerReason

logger = get_logger(__name__)


class Timer:
    """One-shot, cancellable timer with a resettable deadline.

    Wraps ``loop.call_later``; ``reset`` moves the deadline instead of
    stacking a second callback.
    """

    def __init__(
        self,
        callback: Callable[[], None],
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        self._callback = callback
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def deadline(self) -> float | None:
        """Loop time at which the timer fires, if armed."""
        if self._handle is None:
            return None
        return self._handle.when()

    def reset(self, delay: float) -> None:
        """(Re)arm the timer to fire ``delay`` seconds from now."""
        self.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(max(0.0, delay), self._fire)

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()


class EventDebouncer:
    """Single-consumer coalescing queue for supervisor triggers.

    Every ``post`` restarts the quiet window and replaces the held trigger,
    so the consumer sees only the most recent one once the window elapses
    without further posts. ``manual_stop`` skips the window and drops
    whatever was pending.
    """

    def __init__(
        self,
        window: float,
        deliver: Callable[[TriggerReason], None],
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        if window < 0:
            raise ValueError("debounce window must be >= 0")
        self.window = window
        self._deliver = deliver
        self._loop = loop
        self._pending: TriggerReason | None = None
        self._timer = Timer(self._flush, loop)
        self._closed = False

    @property
    def pending(self) -> TriggerReason | None:
        return self._pending

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach the loop used by ``post_threadsafe`` and the window timer."""
        self._loop = loop
        self._timer.bind(loop)

    def post(self, trigger: TriggerReason) -> None:
        """Submit a trigger. Must run on the event loop thread."""
        if self._closed:
            logger.debug("Debouncer closed, dropping trigger", trigger=trigger.label)
            return

        if trigger.kind == TriggerKind.MANUAL_STOP:
            self._timer.cancel()
            if self._pending is not None:
                logger.debug("Stop pre-empts pending trigger", dropped=self._pending.label)
            self._pending = None
            self._deliver(trigger)
            return

        if self._pending is not None:
            logger.debug(
                "Trigger coalesced",
                dropped=self._pending.label,
                kept=trigger.label,
            )
        self._pending = trigger

        if self.window <= 0:
            self._timer.cancel()
            self._flush()
            return
        self._timer.reset(self.window)

    def post_threadsafe(self, trigger: TriggerReason) -> None:
        """Submit a trigger from a thread that does not own the loop.

        Raises:
            RuntimeError: If no loop has been bound yet
        """
        if self._loop is None:
            raise RuntimeError("EventDebouncer is not bound to an event loop")
        self._loop.call_soon_threadsafe(self.post, trigger)

    def close(self) -> None:
        self._closed = True
        self._timer.cancel()
        self._pending = None

    def _flush(self) -> None:
        trigger, self._pending = self._pending, None
        if trigger is not None:
            self._deliver(trigger)
