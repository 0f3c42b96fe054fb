"""Utility functions shared across autotunnel modules."""

import os
from pathlib import Path

# Port range constants
MIN_PORT = 1
MAX_PORT = 65535

DEFAULT_SSH_PORT = 22


def validate_port(port: int, port_name: str = "Port") -> None:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Raises:
        ValueError: If port is not in valid range (1-65535)
    """
    if not isinstance(port, int) or not (MIN_PORT <= port <= MAX_PORT):
        raise ValueError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")


def validate_non_empty_string(value: str, field_name: str) -> str:
    """Validate that a string is not empty or only whitespace.

    Args:
        value: String value to validate
        field_name: Name of the field for error messages

    Returns:
        Stripped string value

    Raises:
        ValueError: If string is empty or only whitespace
    """
    if not value or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value.strip()


def expand_home(path: str | os.PathLike[str]) -> Path:
    """Expand a leading ``~`` the way ssh does for identity and data paths."""
    return Path(os.fspath(path)).expanduser()


def known_host_name(host: str, port: int = DEFAULT_SSH_PORT) -> str:
    """Return the trust-store key for ``host:port``.

    Matches OpenSSH: bare host on the default port, ``[host]:port`` otherwise.
    """
    if port == DEFAULT_SSH_PORT:
        return host
    return f"[{host}]:{port}"


def describe_exception(exc: BaseException) -> str:
    """Return an exception's message, or its type name when it has none."""
    text = str(exc).strip()
    if not text:
        # TimeoutError() and friends carry no message
        return type(exc).__name__
    return text
