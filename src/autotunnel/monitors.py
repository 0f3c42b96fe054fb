"""Trigger producers: network change, sleep/wake and periodic refresh.

Each monitor re-arms a ``Timer`` after every check and only ever calls
``post``; none of them touch supervisor state.
"""

import socket
import time
from collections.abc import Callable

from .common.logging import get_logger
from .config import TunnelSettings
from .supervisor.debouncer import Timer
from .supervisor.models import TriggerKind, TriggerReason

logger = get_logger(__name__)

# Documentation address; connecting a UDP socket sends nothing
ROUTE_PROBE_ADDRESS = ("192.0.2.1", 9)

Post = Callable[[TriggerReason], None]


def _default_route_address() -> str | None:
    """Source address the kernel would use for outbound traffic."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(ROUTE_PROBE_ADDRESS)
            address = sock.getsockname()[0]
    except OSError:
        return None
    if not address or address.startswith("127.") or address == "0.0.0.0":
        return None
    return address


def network_fingerprint() -> str | None:
    """Describe the active network, or None when there is no usable route.

    The value only needs to change when the interface set or the default
    source address does.
    """
    address = _default_route_address()
    if address is None:
        return None
    try:
        names = sorted(name for _, name in socket.if_nameindex() if name != "lo")
    except OSError:
        names = []
    return f"{','.join(names)}|{address}"


class _TimedMonitor:
    """Runs ``check`` every ``interval`` seconds; 0 disables the monitor."""

    name = "monitor"

    def __init__(self, interval: float, post: Post):
        self.interval = interval
        self._post = post
        self._timer = Timer(self._tick)

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    @property
    def running(self) -> bool:
        return self._timer.pending

    def start(self) -> None:
        if not self.enabled:
            logger.debug("Monitor disabled", monitor=self.name)
            return
        self.prime()
        self._timer.reset(self.interval)
        logger.debug("Monitor started", monitor=self.name, interval=self.interval)

    def stop(self) -> None:
        self._timer.cancel()

    def prime(self) -> None:
        """Capture the baseline before the first check."""

    def check(self) -> None:
        raise NotImplementedError

    def _tick(self) -> None:
        try:
            self.check()
        finally:
            self._timer.reset(self.interval)


class NetworkMonitor(_TimedMonitor):
    """Polls the network fingerprint and reports transitions."""

    name = "network"

    def __init__(
        self,
        interval: float,
        post: Post,
        probe: Callable[[], str | None] = network_fingerprint,
    ):
        super().__init__(interval, post)
        self._probe = probe
        self._last: str | None = None

    def prime(self) -> None:
        self._last = self._probe()

    def check(self) -> None:
        current = self._probe()
        previous, self._last = self._last, current
        if current == previous:
            return
        if previous is None:
            kind = TriggerKind.NETWORK_AVAILABLE
        elif current is None:
            kind = TriggerKind.NETWORK_DEGRADED
        else:
            kind = TriggerKind.NETWORK_CHANGED
        logger.info("Network change detected", kind=kind.value)
        self._post(TriggerReason(kind=kind, detail=current or "no route"))


class SleepMonitor(_TimedMonitor):
    """Detects suspend by comparing wall-clock time between ticks.

    The loop's monotonic clock stops while the machine sleeps, so a timer
    armed for ``interval`` fires late in wall-clock terms after a wake.
    """

    name = "sleep"

    def __init__(
        self,
        interval: float,
        gap_threshold: float,
        post: Post,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(interval, post)
        self.gap_threshold = gap_threshold if gap_threshold > 0 else interval * 2
        self._clock = clock
        self._last = 0.0

    def prime(self) -> None:
        self._last = self._clock()

    def check(self) -> None:
        now = self._clock()
        elapsed, self._last = now - self._last, now
        if elapsed > self.gap_threshold:
            logger.info("Wake from sleep detected", gap_sec=int(elapsed))
            self._post(
                TriggerReason(kind=TriggerKind.SLEEP_WAKE, detail=f"gap {int(elapsed)}s")
            )


class PeriodicRefresh(_TimedMonitor):
    """Requests a proactive reconnect every ``interval`` seconds."""

    name = "periodic"

    def check(self) -> None:
        self._post(TriggerReason(kind=TriggerKind.PERIODIC_REFRESH))


def build_monitors(settings: TunnelSettings, post: Post) -> list[_TimedMonitor]:
    """Create the producers configured by ``settings``."""
    return [
        NetworkMonitor(settings.network_poll_sec, post),
        SleepMonitor(settings.sleep_check_sec, settings.sleep_gap_sec, post),
        PeriodicRefresh(settings.periodic_refresh_sec, post),
    ]
