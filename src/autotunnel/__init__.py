"""autotunnel - keeps an SSH port-forward tunnel alive over unreliable links."""

from .broadcast import SnapshotBroadcaster
from .common.exceptions import (
    AutotunnelError,
    BindFailure,
    ConfigError,
    PersistenceWarning,
    TransportFailure,
    TrustRejection,
)
from .common.logging import get_logger, setup_logging
from .config import (
    ForwardSpec,
    RemoteEndpoint,
    RestartPolicy,
    RestartSettings,
    TunnelSettings,
    dump_config,
    load_config,
    parse_config,
)
from .context import TunnelContext
from .doctor import DoctorItem, DoctorStatus, run_doctor
from .logsink import EventLog, FileLogSink, LogLine
from .supervisor import (
    BackoffPolicy,
    ErrorClass,
    EventDebouncer,
    MetricsFile,
    MetricsSnapshot,
    SessionState,
    SessionSupervisor,
    TriggerKind,
    TriggerReason,
    classify,
)
from .transport import AsyncSSHTransport
from .trust import HostTrustStore, KnownHostsFile, TrustDecision

# Setup logging on package initialization
setup_logging(level="INFO")

__version__ = "0.1.0"


__all__ = [
    # Configuration
    "ForwardSpec",
    "RemoteEndpoint",
    "RestartPolicy",
    "RestartSettings",
    "TunnelSettings",
    "parse_config",
    "load_config",
    "dump_config",
    # Supervision
    "SessionSupervisor",
    "SessionState",
    "TriggerKind",
    "TriggerReason",
    "ErrorClass",
    "BackoffPolicy",
    "EventDebouncer",
    "MetricsSnapshot",
    "MetricsFile",
    "classify",
    "SnapshotBroadcaster",
    "TunnelContext",
    # Trust and transport
    "HostTrustStore",
    "KnownHostsFile",
    "TrustDecision",
    "AsyncSSHTransport",
    # Diagnostics and logs
    "run_doctor",
    "DoctorItem",
    "DoctorStatus",
    "EventLog",
    "FileLogSink",
    "LogLine",
    # Exceptions
    "AutotunnelError",
    "ConfigError",
    "TrustRejection",
    "TransportFailure",
    "BindFailure",
    "PersistenceWarning",
    # Logging
    "get_logger",
    "setup_logging",
]
