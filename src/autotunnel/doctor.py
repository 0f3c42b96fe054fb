"""Read-only diagnostic sweep of the tunnel setup."""

import socket
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from .common.exceptions import ConfigError
from .common.logging import get_logger
from .common.utils import describe_exception, expand_home
from .config import ForwardSpec, parse_config
from .context import DEFAULT_DATA_DIR, DEFAULT_IDENTITY_FILE, KNOWN_HOSTS_FILE
from .supervisor.models import ErrorClass

logger = get_logger(__name__)

REACHABILITY_TIMEOUT = 2.0  # seconds


class DoctorStatus(str, Enum):
    OK = "OK"
    WARN = "WARN"
    ERROR = "ERROR"


class DoctorItem(BaseModel):
    """One line of the doctor report."""

    model_config = ConfigDict(frozen=True)

    title: str
    status: DoctorStatus
    detail: str


def check_bind(forward: ForwardSpec) -> None:
    """Bind the forward's local address and release it at once.

    Raises:
        OSError: If the address cannot be bound
    """
    family = socket.AF_INET6 if ":" in forward.local_host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((forward.local_host, forward.local_port))


def check_reachable(host: str, port: int, timeout: float = REACHABILITY_TIMEOUT) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError as e:
        logger.debug("Reachability probe failed", host=host, port=port, error=str(e))
        return False


def run_doctor(
    config_text: str | None,
    data_dir: str | Path = DEFAULT_DATA_DIR,
    last_error_class: ErrorClass | None = None,
    timeout: float = REACHABILITY_TIMEOUT,
) -> list[DoctorItem]:
    """Run every check in order and return the report.

    An invalid config is reported as the only item; the other checks need
    the parsed settings. Nothing here writes to disk.
    """
    items: list[DoctorItem] = []

    try:
        settings = parse_config(config_text or "")
    except ConfigError as e:
        items.append(DoctorItem(title="Config valid", status=DoctorStatus.ERROR, detail=str(e)))
        return items
    items.append(DoctorItem(title="Config valid", status=DoctorStatus.OK, detail="config parsed"))

    identity = expand_home(settings.remote.identity_file or DEFAULT_IDENTITY_FILE)
    if identity.is_file():
        items.append(
            DoctorItem(title="SSH key", status=DoctorStatus.OK, detail="private key present")
        )
    else:
        items.append(
            DoctorItem(
                title="SSH key",
                status=DoctorStatus.ERROR,
                detail=f"missing private key: {identity}",
            )
        )

    for forward in settings.forwards:
        try:
            check_bind(forward)
        except OSError as e:
            status, detail = DoctorStatus.ERROR, describe_exception(e)
        else:
            status, detail = DoctorStatus.OK, "port available"
        items.append(DoctorItem(title=f"Forward {forward}", status=status, detail=detail))

    remote = settings.remote
    if check_reachable(remote.host, remote.port, timeout):
        items.append(
            DoctorItem(title="SSH host reachable", status=DoctorStatus.OK, detail="tcp connect ok")
        )
    else:
        items.append(
            DoctorItem(
                title="SSH host reachable",
                status=DoctorStatus.WARN,
                detail=f"unable to connect to {remote.host}:{remote.port}",
            )
        )

    if (expand_home(data_dir) / KNOWN_HOSTS_FILE).exists():
        items.append(
            DoctorItem(title="Known hosts", status=DoctorStatus.OK, detail="known_hosts present")
        )
    else:
        items.append(
            DoctorItem(title="Known hosts", status=DoctorStatus.WARN, detail="no known_hosts yet")
        )

    if last_error_class is not None:
        items.append(
            DoctorItem(
                title="Last failure class",
                status=DoctorStatus.WARN,
                detail=last_error_class.value,
            )
        )

    return items


def worst_status(items: list[DoctorItem]) -> DoctorStatus:
    statuses = {item.status for item in items}
    for status in (DoctorStatus.ERROR, DoctorStatus.WARN):
        if status in statuses:
            return status
    return DoctorStatus.OK
