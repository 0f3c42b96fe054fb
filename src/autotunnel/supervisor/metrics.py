"""Supervisor-owned metrics with atomic snapshot updates."""

from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..broadcast import SnapshotBroadcaster
from ..common.logging import get_logger
from .models import MetricsSnapshot

logger = get_logger(__name__)

_COUNTERS = frozenset(
    {
        "start_attempts",
        "start_successes",
        "start_failures",
        "exit_successes",
        "exit_failures",
        "restarts",
    }
)


class MetricsRecorder:
    """Applies one event's worth of changes as a single new snapshot."""

    def __init__(self, broadcaster: SnapshotBroadcaster[MetricsSnapshot] | None = None):
        self.broadcaster = broadcaster or SnapshotBroadcaster(MetricsSnapshot())

    @property
    def snapshot(self) -> MetricsSnapshot:
        return self.broadcaster.value

    def record(self, *increments: str, **values: Any) -> MetricsSnapshot:
        """Bump ``increments`` by one and set ``values``, then publish.

        Raises:
            ValueError: If an increment names something that is not a counter
        """
        current = self.broadcaster.value
        update: dict[str, Any] = dict(values)
        for name in increments:
            if name not in _COUNTERS:
                raise ValueError(f"Unknown counter: {name}")
            update[name] = getattr(current, name) + 1
        snapshot = current.model_copy(update=update)
        self.broadcaster.publish(snapshot)
        return snapshot


class MetricsFile:
    """Last published snapshot as JSON, for commands run out of process."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def save(self, snapshot: MetricsSnapshot) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(snapshot.model_dump_json())
        except OSError as e:
            logger.warning("Could not write metrics file", path=str(self.path), error=str(e))

    def load(self) -> MetricsSnapshot | None:
        if not self.path.exists():
            return None
        try:
            return MetricsSnapshot.model_validate_json(self.path.read_text())
        except (OSError, ValidationError) as e:
            logger.warning("Could not read metrics file", path=str(self.path), error=str(e))
            return None
