"""Common utilities and shared functionality."""

from .exceptions import (
    AutotunnelError,
    BindFailure,
    ConfigError,
    PersistenceWarning,
    TransportFailure,
    TrustRejection,
)
from .logging import get_logger, setup_logging
from .utils import (
    DEFAULT_SSH_PORT,
    MAX_PORT,
    MIN_PORT,
    expand_home,
    describe_exception,
    known_host_name,
    validate_non_empty_string,
    validate_port,
)

__all__ = [
    # Exceptions
    "AutotunnelError",
    "BindFailure",
    "ConfigError",
    "PersistenceWarning",
    "TransportFailure",
    "TrustRejection",
    # Logging
    "get_logger",
    "setup_logging",
    # Utils
    "validate_port",
    "validate_non_empty_string",
    "expand_home",
    "known_host_name",
    "describe_exception",
    "DEFAULT_SSH_PORT",
    "MIN_PORT",
    "MAX_PORT",
]
