"""Session supervision: state machine and its supporting policies."""

from .backoff import BackoffPolicy
from .classifier import classify, classify_exception
from .debouncer import EventDebouncer, Timer
from .metrics import MetricsFile, MetricsRecorder
from .models import (
    ErrorClass,
    MetricItem,
    MetricsSnapshot,
    SessionState,
    TriggerKind,
    TriggerReason,
)
from .supervisor import SessionSupervisor

__all__ = [
    "SessionSupervisor",
    "BackoffPolicy",
    "EventDebouncer",
    "Timer",
    "MetricsRecorder",
    "MetricsFile",
    "classify",
    "classify_exception",
    "ErrorClass",
    "MetricItem",
    "MetricsSnapshot",
    "SessionState",
    "TriggerKind",
    "TriggerReason",
]
