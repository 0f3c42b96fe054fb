"""Explicit runtime context shared by the supervisor, doctor and CLI."""

from dataclasses import dataclass, field
from pathlib import Path

from .common.utils import expand_home
from .config import TunnelSettings
from .logsink import EventLog, FileLogSink
from .supervisor.metrics import MetricsRecorder
from .trust import HostTrustStore, KnownHostsFile

DEFAULT_DATA_DIR = "~/.autotunnel"
DEFAULT_CONFIG_PATH = "~/.autotunnel/autotunnel.yaml"
KNOWN_HOSTS_FILE = "known_hosts"
EVENT_LOG_FILE = "autotunnel.log"
METRICS_FILE = "metrics.json"
DEFAULT_IDENTITY_FILE = "~/.ssh/id_ed25519"


@dataclass
class TunnelContext:
    """Everything a running tunnel shares, built once by the entry point.

    Nothing here is a module-level singleton; tests build their own.
    """

    settings: TunnelSettings
    trust_store: HostTrustStore
    event_log: EventLog
    metrics: MetricsRecorder = field(default_factory=MetricsRecorder)
    data_dir: Path | None = None
    config_path: Path | None = None

    @classmethod
    def create(
        cls,
        settings: TunnelSettings,
        data_dir: str | Path = DEFAULT_DATA_DIR,
        config_path: str | Path | None = None,
    ) -> "TunnelContext":
        """Build a context backed by files under ``data_dir``."""
        base = expand_home(data_dir)
        event_log = EventLog(FileLogSink(base / EVENT_LOG_FILE))
        trust_store = HostTrustStore(
            KnownHostsFile(base / KNOWN_HOSTS_FILE),
            on_warning=lambda message: event_log.warn(message),
        )
        return cls(
            settings=settings,
            trust_store=trust_store,
            event_log=event_log,
            data_dir=base,
            config_path=expand_home(config_path) if config_path else None,
        )

    @property
    def metrics_path(self) -> Path:
        return (self.data_dir or expand_home(DEFAULT_DATA_DIR)) / METRICS_FILE
