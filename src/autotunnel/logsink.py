"""Operator-facing event log: ``timestamp|level|message`` lines."""

import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict

from .broadcast import SnapshotBroadcaster
from .common.logging import get_logger

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_RECENT_LINES = 200

_STRUCTLOG_LEVELS = {
    "DEBUG": "debug",
    "INFO": "info",
    "WARN": "warning",
    "ERROR": "error",
}


class LogLine(BaseModel):
    """One parsed event log line."""

    model_config = ConfigDict(frozen=True)

    timestamp: str
    level: str
    message: str

    def to_line(self) -> str:
        return f"{self.timestamp}|{self.level}|{self.message}"


def parse_log_line(raw: str) -> LogLine | None:
    """Split a stored line; returns None for lines without three fields."""
    parts = raw.rstrip("\n").split("|", 2)
    if len(parts) < 3:
        return None
    return LogLine(timestamp=parts[0], level=parts[1], message=parts[2])


class LogSink(Protocol):
    """Line storage used by EventLog."""

    def append(self, line: str) -> None:
        ...

    def load_recent(self, max_lines: int) -> list[str]:
        ...

    def load_page(self, offset_from_end: int, page_size: int) -> list[str]:
        ...


class FileLogSink:
    """Plain text file, one line per event."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(line + "\n")

    def _read_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        with self._lock:
            return self.path.read_text().splitlines()

    def load_recent(self, max_lines: int) -> list[str]:
        if max_lines <= 0:
            return []
        return self._read_lines()[-max_lines:]

    def load_page(self, offset_from_end: int, page_size: int) -> list[str]:
        """Return ``page_size`` lines ending ``offset_from_end`` lines before EOF."""
        lines = self._read_lines()
        if not lines or page_size <= 0:
            return []
        end = max(len(lines) - max(offset_from_end, 0), 0)
        start = max(end - page_size, 0)
        return lines[start:end]


class EventLog:
    """Writes operator events to structlog, the sink and subscribers.

    Sink I/O errors are logged and swallowed; losing a log line must not
    change supervisor control flow.
    """

    def __init__(self, sink: LogSink | None = None, max_recent: int = MAX_RECENT_LINES):
        self.sink = sink
        self._recent: deque[LogLine] = deque(maxlen=max_recent)
        self.broadcaster: SnapshotBroadcaster[tuple[LogLine, ...]] = SnapshotBroadcaster(())
        if sink is not None:
            try:
                for raw in sink.load_recent(max_recent):
                    parsed = parse_log_line(raw)
                    if parsed is not None:
                        self._recent.append(parsed)
            except OSError as e:
                logger.warning("Could not load recent log lines", error=str(e))
            self.broadcaster.publish(tuple(self._recent))

    @property
    def recent(self) -> tuple[LogLine, ...]:
        return self.broadcaster.value

    def log(self, level: str, message: str, **fields: Any) -> LogLine:
        level = level.upper()
        text = message
        if fields:
            text += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        line = LogLine(
            timestamp=datetime.now().strftime(TIMESTAMP_FORMAT),
            level=level,
            message=text,
        )

        method = getattr(logger, _STRUCTLOG_LEVELS.get(level, "info"))
        method(message, **fields)

        if self.sink is not None:
            try:
                self.sink.append(line.to_line())
            except OSError as e:
                logger.warning("Log sink append failed", error=str(e))

        self._recent.append(line)
        self.broadcaster.publish(tuple(self._recent))
        return line

    def info(self, message: str, **fields: Any) -> LogLine:
        return self.log("INFO", message, **fields)

    def warn(self, message: str, **fields: Any) -> LogLine:
        return self.log("WARN", message, **fields)

    def error(self, message: str, **fields: Any) -> LogLine:
        return self.log("ERROR", message, **fields)

    def load_page(self, offset_from_end: int, page_size: int) -> list[LogLine]:
        if self.sink is None:
            lines = list(self._recent)
            end = max(len(lines) - max(offset_from_end, 0), 0)
            return lines[max(end - page_size, 0):end]
        parsed = (parse_log_line(raw) for raw in self.sink.load_page(offset_from_end, page_size))
        return [line for line in parsed if line is not None]
