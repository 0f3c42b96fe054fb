"""Trust-on-first-use registry of remote host keys."""

import os
import tempfile
import threading
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from .common.exceptions import PersistenceWarning
from .common.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ORIGIN = "autotunnel"


class TrustDecision(str, Enum):
    """Outcome of a host key check."""

    TRUST = "trust"
    REJECT = "reject"


class PresentedKey(BaseModel):
    """A host key as offered during the handshake."""

    model_config = ConfigDict(frozen=True)

    key_type: str = Field(min_length=1, description="e.g. ssh-ed25519")
    key_material: str = Field(min_length=1, description="Base64 public key blob")


class HostKeyEntry(BaseModel):
    """A pinned host key; one per hostname."""

    model_config = ConfigDict(frozen=True)

    hostname: str = Field(min_length=1)
    key_type: str = Field(min_length=1)
    key_material: str = Field(min_length=1)
    origin: str = Field(default=DEFAULT_ORIGIN)

    def matches(self, key: PresentedKey) -> bool:
        return self.key_type == key.key_type and self.key_material == key.key_material

    def to_line(self) -> str:
        return f"{self.hostname} {self.key_type} {self.key_material} {self.origin}"

    @classmethod
    def from_line(cls, line: str) -> "HostKeyEntry | None":
        """Parse a known_hosts style line; comments and junk give None."""
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return None
        parts = stripped.split(None, 3)
        if len(parts) < 3:
            return None
        origin = parts[3] if len(parts) == 4 else DEFAULT_ORIGIN
        return cls(
            hostname=parts[0], key_type=parts[1], key_material=parts[2], origin=origin
        )


class TrustPersistence(Protocol):
    """Storage capability behind HostTrustStore."""

    def load(self) -> list[HostKeyEntry]:
        ...

    def append(self, entry: HostKeyEntry) -> None:
        ...

    def rewrite(self, entries: list[HostKeyEntry]) -> None:
        ...

    def exists(self) -> bool:
        ...


class KnownHostsFile:
    """Append-only known_hosts file; rewritten only on explicit reset."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> list[HostKeyEntry]:
        """Read every pinned entry.

        Raises:
            PersistenceWarning: If the file exists but cannot be read
        """
        if not self.path.exists():
            return []
        try:
            with open(self.path) as f:
                lines = f.readlines()
        except OSError as e:
            raise PersistenceWarning(f"cannot read {self.path}: {e}") from e
        entries = []
        for lineno, line in enumerate(lines, start=1):
            entry = HostKeyEntry.from_line(line)
            if entry is None:
                if line.strip() and not line.lstrip().startswith("#"):
                    logger.warning(
                        "Skipping malformed known_hosts line",
                        path=str(self.path),
                        line=lineno,
                    )
                continue
            entries.append(entry)
        return entries

    def append(self, entry: HostKeyEntry) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(entry.to_line() + "\n")

    def rewrite(self, entries: list[HostKeyEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            prefix=".known_hosts_", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w") as f:
                for entry in entries:
                    f.write(entry.to_line() + "\n")
            os.replace(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise


class HostTrustStore:
    """TOFU registry keyed by hostname.

    Unknown hosts are pinned on first contact. A known host presenting a
    different key is rejected and the pinned key is left untouched.
    """

    def __init__(
        self,
        persistence: TrustPersistence,
        on_warning: Callable[[str], None] | None = None,
    ):
        self.persistence = persistence
        self._on_warning = on_warning
        self._lock = threading.Lock()
        self._entries: dict[str, HostKeyEntry] = {}
        self._load_failed = False
        try:
            loaded = persistence.load()
        except (OSError, PersistenceWarning) as e:
            # Fail closed: nothing is trusted until the store is readable or reset
            self._load_failed = True
            loaded = []
            self._warn(f"cannot read trust store, rejecting all host keys: {e}")
        for entry in loaded:
            # First pin wins, matching ssh's own known_hosts lookup
            self._entries.setdefault(entry.hostname, entry)
        logger.debug("Trust store loaded", entries=len(self._entries))

    def verify(self, hostname: str, key: PresentedKey) -> TrustDecision:
        """Check ``key`` against the pin for ``hostname``, pinning if new."""
        with self._lock:
            if self._load_failed:
                self._warn(f"trust store unreadable, rejecting host key for {hostname}")
                return TrustDecision.REJECT
            existing = self._entries.get(hostname)
            if existing is not None:
                if existing.matches(key):
                    return TrustDecision.TRUST
                self._warn(
                    f"host key changed for {hostname}: "
                    f"pinned {existing.key_type}, presented {key.key_type}"
                )
                return TrustDecision.REJECT

            entry = HostKeyEntry(
                hostname=hostname,
                key_type=key.key_type,
                key_material=key.key_material,
            )
            self._entries[hostname] = entry

        try:
            self.persistence.append(entry)
            logger.info("Pinned new host key", hostname=hostname, key_type=key.key_type)
        except OSError as e:
            self._warn(f"failed to persist host key for {hostname}: {e}")
        return TrustDecision.TRUST

    def get(self, hostname: str) -> HostKeyEntry | None:
        with self._lock:
            return self._entries.get(hostname)

    def entries(self) -> list[HostKeyEntry]:
        with self._lock:
            return list(self._entries.values())

    def reset(self, hostname: str | None = None) -> int:
        """Forget one pinned host, or all of them.

        Resetting all hosts also replaces an unreadable store with an empty one.

        Returns:
            Number of entries removed
        """
        recovered = False
        with self._lock:
            if hostname is None:
                removed = len(self._entries)
                self._entries.clear()
                recovered, self._load_failed = self._load_failed, False
            else:
                removed = 1 if self._entries.pop(hostname, None) is not None else 0
            remaining = list(self._entries.values())
        if removed or recovered:
            self.persistence.rewrite(remaining)
            logger.info("Trust store reset", hostname=hostname or "*", removed=removed)
        return removed

    def _warn(self, message: str) -> None:
        logger.warning(message)
        if self._on_warning is not None:
            self._on_warning(message)
