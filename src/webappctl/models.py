"""Core value types shared across the provisioning workflow."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum
from pathlib import Path
from typing import TYPE_CHECKING

from .validators import validate_code_name

if TYPE_CHECKING:
    from .state import ResourceJournal

LOGGER = logging.getLogger(__name__)


class Runtime(str, Enum):
    """Application runtimes webappctl knows how to provision."""

    NODE = "node"
    FASTAPI = "fastapi"


class InstallMode(str, Enum):
    """How the input collector treats fields that have a default."""

    EASY = "Easy"
    ADVANCED = "Advanced"


@dataclass(frozen=True, slots=True)
class RepoCredentials:
    """Username and access token for cloning a private repository."""

    username: str
    token: str = field(repr=False)

    def __repr__(self) -> str:
        """Never echo the token."""
        return f"RepoCredentials(username={self.username!r}, token='***')"


def recommended_workers() -> int:
    """Return ``2 * cores + 1``, the default worker count."""
    return (os.cpu_count() or 1) * 2 + 1


@dataclass(frozen=True, slots=True)
class ProvisioningConfig:
    """Immutable answers describing the application to provision."""

    runtime: Runtime
    display_name: str
    code_name: str
    repo_url: str
    domain: str
    port: int
    app_dir: Path
    credentials: RepoCredentials | None = None
    workers: int = field(default_factory=recommended_workers)
    concurrency_limit: int = 1000
    backlog_size: int = 2048
    nice: int = 0
    cpu_quota: str = "50%"
    memory_max: str = "1G"
    gzip_comp_level: int = 6
    keepalive_timeout: int = 65
    nvm_dir: Path = Path("/usr/local/nvm")
    asgi_app: str = "main:app"

    def __post_init__(self) -> None:
        """Validate the code name once; it is used as user, directory and unit name."""
        validate_code_name(self.code_name)
        if not isinstance(self.runtime, Runtime):
            object.__setattr__(self, "runtime", Runtime(self.runtime))

    @property
    def unit_name(self) -> str:
        """Return the systemd unit name."""
        return f"{self.code_name}.service"

    @property
    def site_name(self) -> str:
        """Return the nginx site file name."""
        return self.code_name

    @property
    def upstream(self) -> str:
        """Return the loopback address nginx proxies to."""
        return f"127.0.0.1:{self.port}"

    def describe(self) -> dict[str, object]:
        """Return a log-safe summary (credentials reduced to a flag)."""
        return {
            "runtime": self.runtime.value,
            "display_name": self.display_name,
            "code_name": self.code_name,
            "repo_url": self.repo_url,
            "private_repo": self.credentials is not None,
            "domain": self.domain,
            "port": self.port,
            "app_dir": str(self.app_dir),
            "workers": self.workers,
            "concurrency_limit": self.concurrency_limit,
            "backlog_size": self.backlog_size,
            "nice": self.nice,
            "cpu_quota": self.cpu_quota,
            "memory_max": self.memory_max,
            "gzip_comp_level": self.gzip_comp_level,
            "keepalive_timeout": self.keepalive_timeout,
        }


class ResourceKind(str, Enum):
    """Kinds of host mutations that teardown knows how to undo."""

    USER_CREATED = "user_created"
    DIRECTORY_CREATED = "directory_created"
    REPOSITORY_CLONED = "repository_cloned"
    DEPENDENCIES_INSTALLED = "dependencies_installed"
    UNIT_FILE_WRITTEN = "unit_file_written"
    UNIT_ENABLED = "unit_enabled"
    UNIT_STARTED = "unit_started"
    SITE_FILE_WRITTEN = "site_file_written"
    SITE_ENABLED = "site_enabled"
    NGINX_RELOADED = "nginx_reloaded"


@dataclass(frozen=True, slots=True)
class ProvisionedResource:
    """A host mutation that has been applied successfully."""

    kind: ResourceKind
    identifier: str
    created_at: datetime

    @property
    def key(self) -> tuple[ResourceKind, str]:
        """Return the identity used for de-duplication."""
        return (self.kind, self.identifier)

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind.value,
            "identifier": self.identifier,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> ProvisionedResource:
        """Rebuild an entry from :meth:`to_dict` output."""
        return cls(
            kind=ResourceKind(str(payload["kind"])),
            identifier=str(payload["identifier"]),
            created_at=datetime.fromisoformat(str(payload["created_at"])),
        )


class ResourceLog:
    """Ordered record of applied host mutations; the sole input to teardown.

    Entries are appended synchronously and, when a journal is bound, flushed
    to disk before :meth:`record` returns so a crash between two steps never
    loses track of what must be undone.
    """

    def __init__(
        self,
        entries: list[ProvisionedResource] | None = None,
        *,
        journal: ResourceJournal | None = None,
    ) -> None:
        """Start from *entries* (oldest first), optionally persisting to *journal*."""
        self._entries: list[ProvisionedResource] = []
        self._journal = journal
        for entry in entries or []:
            if entry.key not in self._keys():
                self._entries.append(entry)

    def _keys(self) -> set[tuple[ResourceKind, str]]:
        return {entry.key for entry in self._entries}

    @property
    def entries(self) -> tuple[ProvisionedResource, ...]:
        """Return a snapshot of the entries in creation order."""
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def contains(self, kind: ResourceKind, identifier: str) -> bool:
        """Return ``True`` when *kind*/*identifier* has been recorded."""
        return (kind, identifier) in self._keys()

    def record(self, kind: ResourceKind, identifier: str | Path) -> bool:
        """Append a new entry; return ``False`` if the same entry already exists."""
        key = (kind, str(identifier))
        if key in self._keys():
            LOGGER.debug("Resource %s:%s already recorded", kind.value, identifier)
            return False
        entry = ProvisionedResource(kind=kind, identifier=str(identifier), created_at=_now())
        self._entries.append(entry)
        self._flush()
        return True

    def last(self) -> ProvisionedResource:
        """Return the newest entry without removing it."""
        return self._entries[-1]

    def pop_last(self) -> ProvisionedResource:
        """Remove the newest entry once it has been undone, then flush the journal."""
        entry = self._entries.pop()
        self._flush()
        return entry

    def _flush(self) -> None:
        if self._journal is None:
            return
        if self._entries:
            self._journal.save(self._entries)
        else:
            self._journal.delete()


class UnitState(IntEnum):
    """Lifecycle states of a managed unit (service or site)."""

    ABSENT = 0
    WRITTEN = 1
    ENABLED = 2
    STARTED = 3
    VERIFIED = 4


def _now() -> datetime:
    return datetime.now(UTC)


__all__ = [
    "InstallMode",
    "ProvisionedResource",
    "ProvisioningConfig",
    "RepoCredentials",
    "ResourceKind",
    "ResourceLog",
    "Runtime",
    "UnitState",
    "recommended_workers",
]
