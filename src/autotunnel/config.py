"""Tunnel configuration models and YAML loading."""

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .common.exceptions import ConfigError
from .common.logging import get_logger
from .common.utils import (
    DEFAULT_SSH_PORT,
    validate_non_empty_string,
    validate_port,
)

logger = get_logger(__name__)

DEFAULT_LOCAL_HOST = "127.0.0.1"

# Fallbacks used when a numeric field is present but unparsable
DEFAULT_MIN_DELAY_MS = 2000
DEFAULT_MAX_DELAY_MS = 30000
DEFAULT_FACTOR = 2.0
DEFAULT_JITTER = 0.2
DEFAULT_DEBOUNCE_MS = 2000
DEFAULT_PERIODIC_REFRESH_SEC = 3600
DEFAULT_SLEEP_CHECK_SEC = 5
DEFAULT_SLEEP_GAP_SEC = 30
DEFAULT_NETWORK_POLL_SEC = 5


class RestartPolicy(str, Enum):
    """When a session that ended should be reopened."""

    ALWAYS = "always"
    ON_FAILURE = "on-failure"


class ForwardSpec(BaseModel):
    """One local forward: ``localHost:localPort:remoteHost:remotePort``."""

    model_config = ConfigDict(frozen=True)

    local_host: str = Field(default=DEFAULT_LOCAL_HOST)
    local_port: int = Field(ge=1, le=65535)
    remote_host: str = Field(min_length=1)
    remote_port: int = Field(ge=1, le=65535)

    @classmethod
    def parse(cls, spec: str) -> "ForwardSpec":
        """Parse a forward string.

        Raises:
            ValueError: If the forward spec does not have four fields or a port is invalid
        """
        parts = spec.strip().split(":")
        if len(parts) != 4:
            raise ValueError(
                f"invalid forward spec '{spec}': expected "
                "localHost:localPort:remoteHost:remotePort"
            )
        local_host, local_port, remote_host, remote_port = (p.strip() for p in parts)
        try:
            lport = int(local_port)
            rport = int(remote_port)
        except ValueError:
            raise ValueError(f"invalid forward spec '{spec}': ports must be integers")
        validate_port(lport, "local port")
        validate_port(rport, "remote port")
        if not remote_host:
            raise ValueError(f"invalid forward spec '{spec}': remote host is empty")
        return cls(
            local_host=local_host or DEFAULT_LOCAL_HOST,
            local_port=lport,
            remote_host=remote_host,
            remote_port=rport,
        )

    def __str__(self) -> str:
        return (
            f"{self.local_host}:{self.local_port}:{self.remote_host}:{self.remote_port}"
        )


class RemoteEndpoint(BaseModel):
    """The SSH server the tunnel is opened against."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")

    user: str = Field(description="Login user on the remote host")
    host: str = Field(description="Remote hostname or address")
    port: int = Field(default=DEFAULT_SSH_PORT, ge=1, le=65535)
    identity_file: str | None = Field(
        default=None, description="Private key used for authentication"
    )

    @field_validator("user", "host")
    @classmethod
    def validate_required(cls, v: str, info: ValidationInfo) -> str:
        return validate_non_empty_string(v, info.field_name)

    @property
    def summary(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"


class RestartSettings(BaseModel):
    """Backoff, debounce and restart policy knobs."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_delay_ms: int = Field(default=DEFAULT_MIN_DELAY_MS, ge=0)
    max_delay_ms: int = Field(default=DEFAULT_MAX_DELAY_MS, ge=0)
    factor: float = Field(default=DEFAULT_FACTOR, gt=1.0)
    jitter: float = Field(default=DEFAULT_JITTER, ge=0.0, le=1.0)
    debounce_ms: int = Field(default=DEFAULT_DEBOUNCE_MS, ge=0)
    policy: RestartPolicy = Field(default=RestartPolicy.ALWAYS)

    @model_validator(mode="after")
    def check_delay_order(self) -> "RestartSettings":
        if self.min_delay_ms > self.max_delay_ms:
            raise ValueError("min_delay_ms must be <= max_delay_ms")
        return self

    @property
    def min_delay(self) -> float:
        return self.min_delay_ms / 1000.0

    @property
    def max_delay(self) -> float:
        return self.max_delay_ms / 1000.0

    @property
    def debounce_window(self) -> float:
        return self.debounce_ms / 1000.0


class TunnelSettings(BaseModel):
    """Validated, immutable operating parameters for one tunnel.

    A reload builds a new instance; nothing is ever patched in place.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    remote: RemoteEndpoint
    local_forwards: tuple[str, ...] = Field(min_length=1)
    restart: RestartSettings = Field(default_factory=RestartSettings)
    periodic_refresh_sec: int = Field(default=DEFAULT_PERIODIC_REFRESH_SEC, ge=0)
    sleep_check_sec: int = Field(default=DEFAULT_SLEEP_CHECK_SEC, ge=0)
    sleep_gap_sec: int = Field(default=DEFAULT_SLEEP_GAP_SEC, ge=0)
    network_poll_sec: int = Field(default=DEFAULT_NETWORK_POLL_SEC, ge=0)

    @field_validator("local_forwards", mode="before")
    @classmethod
    def normalize_forwards(cls, v: Any) -> tuple[str, ...]:
        """Trim blanks, drop duplicates and canonicalize each spec."""
        if v is None:
            return ()
        if isinstance(v, str):
            v = [v]
        out: list[str] = []
        for raw in v:
            if raw is None or not str(raw).strip():
                continue
            spec = str(ForwardSpec.parse(str(raw)))
            if spec not in out:
                out.append(spec)
        return tuple(out)

    @property
    def forwards(self) -> list[ForwardSpec]:
        return [ForwardSpec.parse(spec) for spec in self.local_forwards]

    def with_forwards(self, forwards: list[str]) -> "TunnelSettings":
        """Return a new settings object with a replaced forward list.

        Raises:
            ConfigError: If the new list is empty or holds an invalid spec
        """
        data = self.model_dump()
        data["local_forwards"] = forwards
        return _validate(data)


def _int_or_default(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    if value is not None:
        logger.warning("Unparsable numeric config value", key=key, default=default)
    return default


def _float_or_default(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            pass
    if value is not None:
        logger.warning("Unparsable numeric config value", key=key, default=default)
    return default


def _section(data: dict[str, Any], *names: str) -> dict[str, Any]:
    for name in names:
        value = data.get(name)
        if isinstance(value, dict):
            return value
    return {}


def _validate(data: dict[str, Any]) -> TunnelSettings:
    try:
        return TunnelSettings.model_validate(data)
    except ValidationError as e:
        problems = []
        for err in e.errors():
            field = ".".join(str(part) for part in err["loc"]) or "config"
            problems.append((field, err["msg"]))
        field, reason = problems[0]
        raise ConfigError(field, reason, problems) from e


def settings_from_mapping(data: dict[str, Any]) -> TunnelSettings:
    """Build settings from an already-decoded config mapping.

    Raises:
        ConfigError: With every failing field listed
    """
    remote = _section(data, "remote", "ssh")
    client = _section(data, "client")
    restart = _section(client, "restart")

    remote_data: dict[str, Any] = {
        "port": _int_or_default(remote, "port", DEFAULT_SSH_PORT),
    }
    for key in ("user", "host", "identity_file"):
        if remote.get(key) is not None:
            remote_data[key] = str(remote[key])

    mapped = {
        "remote": remote_data,
        "local_forwards": client.get("local_forwards"),
        "restart": {
            "min_delay_ms": _int_or_default(restart, "min_delay_ms", DEFAULT_MIN_DELAY_MS),
            "max_delay_ms": _int_or_default(restart, "max_delay_ms", DEFAULT_MAX_DELAY_MS),
            "factor": _float_or_default(restart, "factor", DEFAULT_FACTOR),
            "jitter": _float_or_default(restart, "jitter", DEFAULT_JITTER),
            "debounce_ms": _int_or_default(restart, "debounce_ms", DEFAULT_DEBOUNCE_MS),
            "policy": str(restart.get("policy") or RestartPolicy.ALWAYS.value).lower(),
        },
        "periodic_refresh_sec": _int_or_default(
            client, "periodic_restart_sec", DEFAULT_PERIODIC_REFRESH_SEC
        ),
        "sleep_check_sec": _int_or_default(client, "sleep_check_sec", DEFAULT_SLEEP_CHECK_SEC),
        "sleep_gap_sec": _int_or_default(client, "sleep_gap_sec", DEFAULT_SLEEP_GAP_SEC),
        "network_poll_sec": _int_or_default(
            client, "network_poll_sec", DEFAULT_NETWORK_POLL_SEC
        ),
    }
    return _validate(mapped)


def parse_config(text: str) -> TunnelSettings:
    """Parse YAML config text into validated settings.

    Args:
        text: YAML document following the ``remote``/``client`` schema

    Returns:
        Immutable tunnel settings

    Raises:
        ConfigError: If the document is malformed or any required field is invalid
    """
    try:
        data = yaml.safe_load(text) if text and text.strip() else {}
    except yaml.YAMLError as e:
        raise ConfigError("config", f"invalid YAML: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("config", "invalid config format: expected a mapping")
    return settings_from_mapping(data)


def load_config(path: str | Path) -> TunnelSettings:
    """Read and parse a config file.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    config_path = Path(path).expanduser()
    try:
        text = config_path.read_text()
    except FileNotFoundError as e:
        raise ConfigError("config", f"file not found: {config_path}") from e
    except OSError as e:
        raise ConfigError("config", f"cannot read {config_path}: {e}") from e
    settings = parse_config(text)
    logger.info(
        "Configuration loaded",
        path=str(config_path),
        remote=settings.remote.summary,
        forwards=len(settings.local_forwards),
    )
    return settings


def dump_config(settings: TunnelSettings) -> str:
    """Render settings back to the YAML schema accepted by parse_config."""
    remote: dict[str, Any] = {
        "user": settings.remote.user,
        "host": settings.remote.host,
        "port": settings.remote.port,
    }
    if settings.remote.identity_file:
        remote["identity_file"] = settings.remote.identity_file
    restart = settings.restart
    doc = {
        "remote": remote,
        "client": {
            "restart": {
                "min_delay_ms": restart.min_delay_ms,
                "max_delay_ms": restart.max_delay_ms,
                "factor": restart.factor,
                "jitter": restart.jitter,
                "debounce_ms": restart.debounce_ms,
                "policy": restart.policy.value,
            },
            "periodic_restart_sec": settings.periodic_refresh_sec,
            "sleep_check_sec": settings.sleep_check_sec,
            "sleep_gap_sec": settings.sleep_gap_sec,
            "network_poll_sec": settings.network_poll_sec,
            "local_forwards": list(settings.local_forwards),
        },
    }
    return yaml.safe_dump(doc, sort_keys=False)


def save_config(path: str | Path, settings: TunnelSettings) -> None:
    """Write settings to ``path``, creating the parent directory."""
    config_path = Path(path).expanduser()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(dump_config(settings))
    logger.info("Configuration saved", path=str(config_path))


def _canonical_forward(spec: str) -> str:
    try:
        return str(ForwardSpec.parse(spec))
    except ValueError as e:
        raise ConfigError("local_forwards", str(e)) from e


def add_forward(settings: TunnelSettings, spec: str) -> TunnelSettings:
    """Return settings with ``spec`` appended; unchanged if already present.

    Raises:
        ConfigError: If the forward spec is malformed
    """
    forward = _canonical_forward(spec)
    if forward in settings.local_forwards:
        return settings
    return settings.with_forwards([*settings.local_forwards, forward])


def remove_forward(settings: TunnelSettings, spec: str) -> TunnelSettings:
    """Return settings without ``spec``.

    Raises:
        ConfigError: If the forward spec is malformed, unknown, or the last forward
    """
    forward = _canonical_forward(spec)
    if forward not in settings.local_forwards:
        raise ConfigError("local_forwards", f"no such forward: {forward}")
    if len(settings.local_forwards) == 1:
        raise ConfigError("local_forwards", "cannot remove the last forward")
    return settings.with_forwards([f for f in settings.local_forwards if f != forward])
