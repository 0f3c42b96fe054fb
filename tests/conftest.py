"""Shared pytest fixtures for autotunnel tests."""

import asyncio
from collections.abc import Callable

import pytest

from autotunnel.common.exceptions import TrustRejection
from autotunnel.common.utils import known_host_name
from autotunnel.config import TunnelSettings, settings_from_mapping
from autotunnel.context import TunnelContext
from autotunnel.trust import PresentedKey, TrustDecision

FORWARD = "127.0.0.1:15432:127.0.0.1:5432"


class FakeSession:
    """Session double whose end is driven by the test."""

    def __init__(self) -> None:
        self.closed = False
        self._ended = asyncio.Event()
        self._message: str | None = None

    async def close(self) -> None:
        self.closed = True
        self._ended.set()

    async def wait_closed(self) -> str | None:
        await self._ended.wait()
        return None if self.closed else self._message

    def drop(self, message: str | None = None) -> None:
        """Simulate the remote side ending the session."""
        self._message = message
        self._ended.set()


class FakeTransport:
    """Transport double that plays back a list of outcomes.

    Each outcome is an exception to raise, a PresentedKey to run through the
    verifier, ``HANG`` to block until cancelled, or None for a clean open.
    Once the list is exhausted every open succeeds.
    """

    HANG = "hang"

    def __init__(self, outcomes: list | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: list[tuple] = []
        self.sessions: list[FakeSession] = []

    async def open_session(self, remote, forwards, verifier) -> FakeSession:
        self.calls.append((remote, list(forwards)))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome == self.HANG:
            await asyncio.Event().wait()
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, PresentedKey):
            hostname = known_host_name(remote.host, remote.port)
            if verifier(hostname, outcome) == TrustDecision.REJECT:
                raise TrustRejection(hostname)
        session = FakeSession()
        self.sessions.append(session)
        return session


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def wait_until():
    """Poll a predicate on the running loop until it holds.

    Returns:
        Coroutine function ``wait_until(predicate, timeout=2.0)``
    """
    return _wait_until


@pytest.fixture
def fake_transport() -> type[FakeTransport]:
    """The transport double class; call it with a list of outcomes."""
    return FakeTransport


@pytest.fixture
def make_settings() -> Callable[..., TunnelSettings]:
    """Build settings with fast retries and every monitor disabled."""

    def factory(
        min_delay_ms: int = 10,
        max_delay_ms: int = 40,
        debounce_ms: int = 0,
        policy: str = "always",
        forwards: tuple[str, ...] = (FORWARD,),
        port: int = 22,
    ) -> TunnelSettings:
        return settings_from_mapping(
            {
                "remote": {"user": "ubuntu", "host": "example.com", "port": port},
                "client": {
                    "restart": {
                        "min_delay_ms": min_delay_ms,
                        "max_delay_ms": max_delay_ms,
                        "factor": 2.0,
                        "jitter": 0.0,
                        "debounce_ms": debounce_ms,
                        "policy": policy,
                    },
                    "periodic_restart_sec": 0,
                    "sleep_check_sec": 0,
                    "network_poll_sec": 0,
                    "local_forwards": list(forwards),
                },
            }
        )

    return factory


@pytest.fixture
def settings(make_settings) -> TunnelSettings:
    return make_settings()


@pytest.fixture
def make_context(tmp_path) -> Callable[[TunnelSettings], TunnelContext]:
    """Build a context whose files live under ``tmp_path``."""

    def factory(settings: TunnelSettings) -> TunnelContext:
        return TunnelContext.create(settings, data_dir=tmp_path)

    return factory


@pytest.fixture
def context(make_context, settings) -> TunnelContext:
    return make_context(settings)


@pytest.fixture
def config_text() -> str:
    return """
remote:
  user: ubuntu
  host: example.com
  port: 2222
  identity_file: ~/.ssh/id_test
client:
  restart:
    min_delay_ms: 1000
    max_delay_ms: 20000
    factor: 1.5
    jitter: 0.1
    debounce_ms: 500
    policy: on-failure
  periodic_restart_sec: 600
  sleep_check_sec: 10
  sleep_gap_sec: 60
  network_poll_sec: 3
  local_forwards:
    - "127.0.0.1:15432:127.0.0.1:5432"
    - ":18080:10.0.0.5:80"
"""
