"""Forwarding session transport built on AsyncSSH.

The supervisor only sees the ``Transport``/``Session`` protocols; failures
come back as ``TransportFailure`` with free text for the classifier, or
``TrustRejection`` when the host key check refused the server.
"""

import asyncio
from collections.abc import Callable
from typing import Any, Protocol

import asyncssh

from .common.exceptions import BindFailure, TransportFailure, TrustRejection
from .common.logging import get_logger
from .common.utils import describe_exception, expand_home, known_host_name
from .config import ForwardSpec, RemoteEndpoint
from .trust import PresentedKey, TrustDecision

logger = get_logger(__name__)

# Constants
SSH_CONNECT_TIMEOUT = 15.0  # seconds
SSH_KEEPALIVE_INTERVAL = 15  # seconds
SSH_KEEPALIVE_COUNT_MAX = 3  # missed keepalives before disconnect

TrustVerifier = Callable[[str, PresentedKey], TrustDecision]


class Session(Protocol):
    """An open tunnel with all forwards bound."""

    async def close(self) -> None:
        ...

    async def wait_closed(self) -> str | None:
        """Wait until the session ends.

        Returns:
            None for a clean or requested close, else the failure message
        """
        ...


class Transport(Protocol):
    """Opaque "open a forwarding session" capability."""

    async def open_session(
        self,
        remote: RemoteEndpoint,
        forwards: list[ForwardSpec],
        verifier: TrustVerifier,
    ) -> Session:
        ...


def presented_key_from_ssh(key: asyncssh.SSHKey) -> PresentedKey:
    """Convert an AsyncSSH public key to the trust store's representation."""
    parts = key.export_public_key("openssh").decode("ascii").split()
    return PresentedKey(key_type=parts[0], key_material=parts[1])


class _VerifyingClient(asyncssh.SSHClient):
    """Routes host key validation through the trust store."""

    def __init__(self, hostname: str, verifier: TrustVerifier):
        self._hostname = hostname
        self._verifier = verifier
        self.rejected = False
        self.lost_reason: str | None = None

    def validate_host_public_key(
        self, host: str, addr: str, port: int, key: asyncssh.SSHKey
    ) -> bool:
        decision = self._verifier(self._hostname, presented_key_from_ssh(key))
        if decision == TrustDecision.REJECT:
            self.rejected = True
            return False
        return True

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            self.lost_reason = describe_exception(exc)


class AsyncSSHSession:
    """Tracks an open AsyncSSH connection and its local listeners."""

    def __init__(
        self,
        conn: asyncssh.SSHClientConnection,
        listeners: list[asyncssh.SSHListener],
        client: _VerifyingClient,
    ):
        self._conn = conn
        self._listeners = listeners
        self._client = client
        self._closing = False

    async def close(self) -> None:
        self._closing = True
        for listener in self._listeners:
            listener.close()
        self._listeners = []
        self._conn.close()
        await self._conn.wait_closed()

    async def wait_closed(self) -> str | None:
        await self._conn.wait_closed()
        if self._closing:
            return None
        return self._client.lost_reason


class AsyncSSHTransport:
    """Opens an SSH connection and binds every local forward on it."""

    def __init__(
        self,
        connect_timeout: float = SSH_CONNECT_TIMEOUT,
        keepalive_interval: int = SSH_KEEPALIVE_INTERVAL,
        keepalive_count_max: int = SSH_KEEPALIVE_COUNT_MAX,
    ):
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.keepalive_count_max = keepalive_count_max

    async def open_session(
        self,
        remote: RemoteEndpoint,
        forwards: list[ForwardSpec],
        verifier: TrustVerifier,
    ) -> AsyncSSHSession:
        """Connect, verify the host key and bind all forwards.

        Raises:
            TrustRejection: If the verifier rejected the host key
            BindFailure: If a local forward could not listen
            TransportFailure: For any other connection error
        """
        hostname = known_host_name(remote.host, remote.port)
        client = _VerifyingClient(hostname, verifier)

        options: dict[str, Any] = {
            "port": remote.port,
            "username": remote.user,
            # No preloaded keys: every host key goes through validate_host_public_key
            "known_hosts": asyncssh.import_known_hosts(""),
            "client_factory": lambda: client,
            "connect_timeout": self.connect_timeout,
            "keepalive_interval": self.keepalive_interval,
            "keepalive_count_max": self.keepalive_count_max,
        }
        if remote.identity_file:
            options["client_keys"] = [str(expand_home(remote.identity_file))]

        logger.debug("Opening SSH connection", remote=remote.summary)
        try:
            conn = await asyncssh.connect(remote.host, **options)
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            if client.rejected:
                raise TrustRejection(hostname, describe_exception(e)) from e
            raise TransportFailure(describe_exception(e)) from e

        listeners: list[asyncssh.SSHListener] = []
        for forward in forwards:
            try:
                listener = await conn.forward_local_port(
                    forward.local_host,
                    forward.local_port,
                    forward.remote_host,
                    forward.remote_port,
                )
            except (asyncssh.Error, OSError) as e:
                for opened in listeners:
                    opened.close()
                conn.close()
                raise BindFailure(str(forward), describe_exception(e)) from e
            listeners.append(listener)
            logger.info(
                "Local forward bound",
                listen=f"{forward.local_host}:{forward.local_port}",
                target=f"{forward.remote_host}:{forward.remote_port}",
            )

        return AsyncSSHSession(conn, listeners, client)
