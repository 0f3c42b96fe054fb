"""Supervisor models using Pydantic for type safety and validation."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class SessionState(str, Enum):
    """Lifecycle state of the supervised tunnel."""

    STOPPED = "stopped"
    CONNECTING = "connecting"
    RUNNING = "running"


class ErrorClass(str, Enum):
    """Coarse failure category derived from transport messages."""

    AUTH = "auth"
    HOSTKEY = "hostkey"
    DNS = "dns"
    REFUSED = "refused"
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNKNOWN = "unknown"


class TriggerKind(str, Enum):
    """Sources of supervisor decisions."""

    MANUAL_START = "manual_start"
    MANUAL_STOP = "manual_stop"
    NETWORK_AVAILABLE = "network_available"
    NETWORK_CHANGED = "network_changed"
    NETWORK_DEGRADED = "network_degraded"
    SLEEP_WAKE = "sleep_wake"
    PERIODIC_REFRESH = "periodic_refresh"
    CONNECTION_FAILED = "connection_failed"
    CONNECTION_SUCCEEDED = "connection_succeeded"
    CONFIG_RELOADED = "config_reloaded"


# Triggers that tear down a running session and reconnect at once
REFRESH_TRIGGERS = frozenset(
    {
        TriggerKind.NETWORK_CHANGED,
        TriggerKind.NETWORK_DEGRADED,
        TriggerKind.SLEEP_WAKE,
        TriggerKind.PERIODIC_REFRESH,
        TriggerKind.CONFIG_RELOADED,
    }
)

# Triggers that cut a pending backoff wait short
WAKE_RETRY_TRIGGERS = frozenset(
    {
        TriggerKind.NETWORK_AVAILABLE,
        TriggerKind.NETWORK_CHANGED,
        TriggerKind.SLEEP_WAKE,
    }
)


class TriggerReason(BaseModel):
    """A single event posted to the supervisor."""

    model_config = ConfigDict(frozen=True)

    kind: TriggerKind
    error_class: ErrorClass | None = Field(
        default=None, description="Set for connection_failed"
    )
    detail: str | None = Field(default=None, description="Free-text context")

    @classmethod
    def manual_start(cls) -> "TriggerReason":
        return cls(kind=TriggerKind.MANUAL_START)

    @classmethod
    def manual_stop(cls) -> "TriggerReason":
        return cls(kind=TriggerKind.MANUAL_STOP)

    @classmethod
    def connection_failed(
        cls, error_class: ErrorClass, detail: str | None = None
    ) -> "TriggerReason":
        return cls(
            kind=TriggerKind.CONNECTION_FAILED, error_class=error_class, detail=detail
        )

    @property
    def label(self) -> str:
        if self.detail:
            return f"{self.kind.value}: {self.detail}"
        return self.kind.value


class MetricItem(BaseModel):
    """One exported ``{key, value}`` pair."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: str


class MetricsSnapshot(BaseModel):
    """Immutable view of supervisor counters and last-known values."""

    model_config = ConfigDict(frozen=True)

    state: SessionState = SessionState.STOPPED
    start_attempts: int = 0
    start_successes: int = 0
    start_failures: int = 0
    exit_successes: int = 0
    exit_failures: int = 0
    restarts: int = 0
    last_exit_reason: str | None = None
    last_error_class: ErrorClass | None = None
    last_trigger: str | None = None
    current_backoff: float | None = Field(
        default=None, description="Seconds until the scheduled retry"
    )
    uptime_start: datetime | None = None
    last_success: datetime | None = None

    def uptime_seconds(self, now: datetime | None = None) -> int | None:
        if self.uptime_start is None or self.state != SessionState.RUNNING:
            return None
        now = now or datetime.now()
        return int((now - self.uptime_start).total_seconds())

    def to_items(self, now: datetime | None = None) -> list[MetricItem]:
        """Export as stable ``{key, value}`` pairs.

        Optional values are only listed once they have been observed.
        """
        items = [
            MetricItem(key="session_state", value=self.state.value),
            MetricItem(key="restart_total", value=str(self.restarts)),
            MetricItem(key="start_attempt_total", value=str(self.start_attempts)),
            MetricItem(key="start_success_total", value=str(self.start_successes)),
            MetricItem(key="start_failure_total", value=str(self.start_failures)),
            MetricItem(key="exit_success_total", value=str(self.exit_successes)),
            MetricItem(key="exit_failure_total", value=str(self.exit_failures)),
            MetricItem(key="last_exit", value=self.last_exit_reason or "-"),
            MetricItem(
                key="last_error_class",
                value=self.last_error_class.value if self.last_error_class else "-",
            ),
            MetricItem(key="last_trigger", value=self.last_trigger or "-"),
        ]
        if self.current_backoff is not None:
            items.append(
                MetricItem(key="backoff_ms", value=str(int(self.current_backoff * 1000)))
            )
        if self.last_success is not None:
            items.append(
                MetricItem(
                    key="last_success_unix", value=str(int(self.last_success.timestamp()))
                )
            )
        uptime = self.uptime_seconds(now)
        if uptime is not None:
            items.append(MetricItem(key="uptime_sec", value=str(uptime)))
        return items
