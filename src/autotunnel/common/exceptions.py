"""Custom exceptions for autotunnel."""


class AutotunnelError(Exception):
    """Base exception for all autotunnel errors."""

    pass


class ConfigError(AutotunnelError):
    """Raised when the tunnel configuration is invalid.

    Fatal to startup and never retried automatically.
    """

    def __init__(
        self,
        field: str,
        reason: str,
        problems: list[tuple[str, str]] | None = None,
    ):
        self.field = field
        self.reason = reason
        self.problems = problems or [(field, reason)]
        super().__init__("; ".join(f"{f}: {r}" for f, r in self.problems))


class TrustRejection(AutotunnelError):
    """Raised when a host presents a key that differs from the pinned one."""

    def __init__(self, hostname: str, detail: str | None = None):
        self.hostname = hostname
        message = f"host key changed for {hostname}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class TransportFailure(AutotunnelError):
    """Raised when the transport cannot open or keep a forwarding session."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class BindFailure(TransportFailure):
    """Raised when a local forward cannot bind its listening address."""

    def __init__(self, spec: str, reason: str):
        self.spec = spec
        self.reason = reason
        super().__init__(f"bind failed for {spec}: {reason}")


class PersistenceWarning(AutotunnelError):
    """Raised by persistence backends; callers log it and carry on."""

    pass
