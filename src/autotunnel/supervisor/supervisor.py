"""Serialized control loop that owns the tunnel session state."""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime
from types import TracebackType
from typing import TYPE_CHECKING, Any

from ..common.exceptions import TransportFailure, TrustRejection
from ..common.logging import get_logger
from ..common.utils import describe_exception
from ..config import RestartPolicy, TunnelSettings, add_forward, remove_forward
from ..transport import Session, Transport
from .backoff import BackoffPolicy
from .classifier import classify, classify_exception
from .debouncer import EventDebouncer, Timer
from .models import (
    REFRESH_TRIGGERS,
    WAKE_RETRY_TRIGGERS,
    ErrorClass,
    MetricsSnapshot,
    SessionState,
    TriggerKind,
    TriggerReason,
)

if TYPE_CHECKING:
    from ..context import TunnelContext

logger = get_logger(__name__)

SESSION_CLOSE_TIMEOUT = 5.0  # seconds


@dataclass(frozen=True)
class _AttemptSucceeded:
    generation: int
    session: Session


@dataclass(frozen=True)
class _AttemptFailed:
    generation: int
    error: Exception


@dataclass(frozen=True)
class _SessionEnded:
    generation: int
    message: str | None


@dataclass(frozen=True)
class _RetryDue:
    generation: int


_SHUTDOWN = object()


class SessionSupervisor:
    """Keeps one forwarding session alive.

    All state changes happen in ``run``, which consumes one event at a time
    from an internal queue. Producers never touch state directly: they call
    ``post`` (debounced), ``stop`` or ``notify_connection_failed``.
    Connection attempts and session watchers run as separate tasks and
    report back through the same queue, tagged with the generation that
    started them so superseded outcomes can be dropped.
    """

    def __init__(
        self,
        context: "TunnelContext",
        transport: Transport,
        rng: random.Random | None = None,
    ):
        self.context = context
        self.transport = transport
        self._rng = rng
        self._backoff = BackoffPolicy.from_settings(context.settings.restart, rng)
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._debouncer = EventDebouncer(
            context.settings.restart.debounce_window, self._queue.put_nowait
        )
        self._retry_timer = Timer(self._retry_due)

        self._state = SessionState.STOPPED
        self._attempt = 0
        self._generation = 0
        self._session: Session | None = None
        self._attempt_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._run_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def attempt(self) -> int:
        """Consecutive failed attempts since the last successful connect."""
        return self._attempt

    @property
    def settings(self) -> TunnelSettings:
        return self.context.settings

    @property
    def metrics(self) -> MetricsSnapshot:
        return self.context.metrics.snapshot

    @property
    def retry_pending(self) -> bool:
        return self._retry_timer.pending

    # Producer side

    def start(self) -> None:
        self.post(TriggerReason.manual_start())

    def stop(self) -> None:
        self.post(TriggerReason.manual_stop())

    def post(self, trigger: TriggerReason) -> None:
        """Submit a trigger from the event loop thread.

        ``connection_failed`` is authoritative and skips the debouncer;
        ``manual_stop`` is delivered at once by the debouncer itself.
        """
        if trigger.kind == TriggerKind.CONNECTION_FAILED:
            self._queue.put_nowait(trigger)
            return
        self._debouncer.post(trigger)

    def post_threadsafe(self, trigger: TriggerReason) -> None:
        self._debouncer.post_threadsafe(trigger)

    def notify_connection_failed(self, message: str | None) -> None:
        """Report a liveness failure of the running session."""
        self.post(TriggerReason.connection_failed(classify(message), detail=message))

    def reload(self, settings: TunnelSettings) -> None:
        """Swap in new settings; a running session is refreshed to apply them."""
        self.context.settings = settings
        self._backoff = BackoffPolicy.from_settings(settings.restart, self._rng)
        self._debouncer.window = settings.restart.debounce_window
        logger.info("Settings reloaded", forwards=len(settings.local_forwards))
        if self._state == SessionState.RUNNING:
            self.post(
                TriggerReason(kind=TriggerKind.CONFIG_RELOADED, detail="settings changed")
            )

    def add_forward(self, spec: str) -> TunnelSettings:
        """Add a local forward at runtime.

        Raises:
            ConfigError: If the forward spec is malformed
        """
        settings = add_forward(self.settings, spec)
        if settings is not self.settings:
            self._apply_forwards(settings, f"added {spec.strip()}")
        return settings

    def remove_forward(self, spec: str) -> TunnelSettings:
        """Remove a local forward at runtime.

        Raises:
            ConfigError: If the forward is unknown or is the last one
        """
        settings = remove_forward(self.settings, spec)
        self._apply_forwards(settings, f"removed {spec.strip()}")
        return settings

    def _apply_forwards(self, settings: TunnelSettings, detail: str) -> None:
        self.context.settings = settings
        self.context.event_log.info("Forwards changed", change=detail)
        if self._state == SessionState.RUNNING:
            self.post(TriggerReason(kind=TriggerKind.CONFIG_RELOADED, detail=detail))

    # Lifecycle

    async def __aenter__(self) -> "SessionSupervisor":
        self._run_task = asyncio.create_task(self.run())
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    async def run(self) -> None:
        """Consume events until ``shutdown``; stops the session on exit."""
        self._debouncer.bind(asyncio.get_running_loop())
        logger.debug("Supervisor loop started")
        try:
            while True:
                event = await self._queue.get()
                if event is _SHUTDOWN:
                    break
                try:
                    await self._handle(event)
                except Exception:
                    logger.exception("Unhandled error in supervisor event", event=repr(event))
        finally:
            self._debouncer.close()
            await self._stop()
            logger.debug("Supervisor loop finished")

    async def shutdown(self) -> None:
        self._queue.put_nowait(_SHUTDOWN)
        if self._run_task is not None:
            await self._run_task
            self._run_task = None

    # Event handling; only reached from run()

    async def _handle(self, event: Any) -> None:
        if isinstance(event, TriggerReason):
            await self._on_trigger(event)
        elif isinstance(event, _AttemptSucceeded):
            await self._on_attempt_succeeded(event)
        elif isinstance(event, _AttemptFailed):
            self._on_attempt_failed(event)
        elif isinstance(event, _SessionEnded):
            await self._on_session_ended(event)
        elif isinstance(event, _RetryDue):
            await self._on_retry_due(event)

    async def _on_trigger(self, trigger: TriggerReason) -> None:
        kind = trigger.kind
        logger.debug("Trigger received", trigger=trigger.label, state=self._state.value)

        if kind == TriggerKind.MANUAL_STOP:
            await self._stop()
        elif kind == TriggerKind.MANUAL_START:
            if self._state != SessionState.STOPPED:
                logger.debug("Already started, ignoring", state=self._state.value)
                return
            self.context.event_log.info("Starting tunnel", remote=self.settings.remote.summary)
            await self._begin_attempt(last_trigger=trigger.label)
        elif kind == TriggerKind.CONNECTION_FAILED:
            if self._state != SessionState.RUNNING:
                return
            await self._teardown()
            error_class = trigger.error_class or classify(trigger.detail)
            self._schedule_retry(
                trigger.detail or error_class.value, error_class, "exit_failures"
            )
        elif kind in REFRESH_TRIGGERS and self._state == SessionState.RUNNING:
            self.context.event_log.info("Refreshing tunnel", trigger=trigger.label)
            await self._teardown()
            await self._begin_attempt("restarts", last_trigger=trigger.label)
        elif (
            kind in WAKE_RETRY_TRIGGERS
            and self._state == SessionState.CONNECTING
            and self._retry_timer.pending
        ):
            self.context.event_log.info("Retrying early", trigger=trigger.label)
            await self._begin_attempt(last_trigger=trigger.label)
        else:
            logger.debug("Trigger has no effect", trigger=trigger.label, state=self._state.value)

    async def _begin_attempt(self, *increments: str, **values: Any) -> None:
        self._retry_timer.cancel()
        await self._cancel_attempt()
        self._generation += 1
        self._state = SessionState.CONNECTING
        self.context.metrics.record(
            "start_attempts",
            *increments,
            state=SessionState.CONNECTING,
            current_backoff=None,
            **values,
        )
        self._attempt_task = asyncio.create_task(self._run_attempt(self._generation))

    async def _run_attempt(self, generation: int) -> None:
        settings = self.context.settings
        try:
            session = await self.transport.open_session(
                settings.remote, settings.forwards, self.context.trust_store.verify
            )
        except Exception as e:
            self._queue.put_nowait(_AttemptFailed(generation, e))
            return
        self._queue.put_nowait(_AttemptSucceeded(generation, session))

    async def _on_attempt_succeeded(self, event: _AttemptSucceeded) -> None:
        if event.generation != self._generation or self._state != SessionState.CONNECTING:
            logger.debug("Closing superseded session", generation=event.generation)
            await self._close_session(event.session)
            return

        self._attempt_task = None
        self._session = event.session
        self._attempt = 0
        self._state = SessionState.RUNNING
        now = datetime.now()
        self.context.event_log.info(
            "Tunnel running",
            remote=self.settings.remote.summary,
            forwards=len(self.settings.local_forwards),
        )
        self.context.metrics.record(
            "start_successes",
            state=SessionState.RUNNING,
            uptime_start=now,
            last_success=now,
            current_backoff=None,
        )
        self._watch_task = asyncio.create_task(
            self._watch_session(self._generation, event.session)
        )

    def _on_attempt_failed(self, event: _AttemptFailed) -> None:
        if event.generation != self._generation or self._state != SessionState.CONNECTING:
            logger.debug("Ignoring superseded failure", generation=event.generation)
            return

        self._attempt_task = None
        error = event.error
        if isinstance(error, TrustRejection):
            self._state = SessionState.STOPPED
            self.context.event_log.error(
                "Host key rejected, not retrying", hostname=error.hostname
            )
            self.context.metrics.record(
                "start_failures",
                state=SessionState.STOPPED,
                last_error_class=ErrorClass.HOSTKEY,
                last_exit_reason=str(error),
                current_backoff=None,
            )
            return

        if isinstance(error, TransportFailure):
            self._schedule_retry(error.message, classify(error.message), "start_failures")
            return
        logger.error("Unexpected transport error", error_type=type(error).__name__)
        self._schedule_retry(
            describe_exception(error), classify_exception(error), "start_failures"
        )

    async def _watch_session(self, generation: int, session: Session) -> None:
        try:
            message = await session.wait_closed()
        except Exception as e:
            message = describe_exception(e)
        self._queue.put_nowait(_SessionEnded(generation, message))

    async def _on_session_ended(self, event: _SessionEnded) -> None:
        if event.generation != self._generation or self._state != SessionState.RUNNING:
            return

        self._watch_task = None
        session, self._session = self._session, None
        if session is not None:
            await self._close_session(session)

        if event.message is not None:
            self._schedule_retry(event.message, classify(event.message), "exit_failures")
            return

        self.context.event_log.info("Session closed by remote")
        if self.settings.restart.policy == RestartPolicy.ON_FAILURE:
            self._state = SessionState.STOPPED
            self.context.metrics.record(
                "exit_successes",
                state=SessionState.STOPPED,
                last_exit_reason="closed",
                current_backoff=None,
            )
            return
        self._schedule_retry("closed", None, "exit_successes", failed=False)

    def _schedule_retry(
        self,
        message: str,
        error_class: ErrorClass | None,
        counter: str,
        failed: bool = True,
    ) -> None:
        if failed:
            self._attempt += 1
        delay = self._backoff.next_delay(self._attempt)
        if failed:
            self.context.event_log.warn(
                "Connection failed",
                error_class=error_class.value if error_class else "-",
                reason=message,
                retry_in_ms=int(delay * 1000),
            )
        else:
            self.context.event_log.info("Reconnecting", retry_in_ms=int(delay * 1000))
        self._state = SessionState.CONNECTING
        self.context.metrics.record(
            counter,
            "restarts",
            state=SessionState.CONNECTING,
            last_error_class=error_class,
            last_exit_reason=message,
            current_backoff=delay,
        )
        self._retry_timer.reset(delay)

    def _retry_due(self) -> None:
        self._queue.put_nowait(_RetryDue(self._generation))

    async def _on_retry_due(self, event: _RetryDue) -> None:
        if event.generation != self._generation or self._state != SessionState.CONNECTING:
            return
        if self._attempt_task is not None:
            return
        await self._begin_attempt()

    async def _stop(self) -> None:
        was_stopped = self._state == SessionState.STOPPED
        await self._halt()
        if was_stopped:
            return
        self.context.event_log.info("Tunnel stopped")
        self.context.metrics.record(
            "exit_successes",
            state=SessionState.STOPPED,
            last_exit_reason="stopped",
            current_backoff=None,
        )

    async def _halt(self) -> None:
        """Cancel everything in flight and close the session, if any."""
        self._retry_timer.cancel()
        self._generation += 1
        await self._cancel_attempt()
        await self._teardown()
        self._state = SessionState.STOPPED

    async def _cancel_attempt(self) -> None:
        task, self._attempt_task = self._attempt_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    async def _teardown(self) -> None:
        watch, self._watch_task = self._watch_task, None
        if watch is not None and not watch.done():
            watch.cancel()
            await asyncio.wait({watch})
        session, self._session = self._session, None
        if session is not None:
            await self._close_session(session)

    async def _close_session(self, session: Session) -> None:
        try:
            await asyncio.wait_for(session.close(), SESSION_CLOSE_TIMEOUT)
        except Exception as e:
            logger.warning("Error closing session", error=describe_exception(e))
