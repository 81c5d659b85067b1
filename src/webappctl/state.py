"""On-disk journal of provisioned resources.

Each application being provisioned gets ``<state_dir>/journals/<code>.yml``.
The file mirrors the in-memory :class:`~webappctl.models.ResourceLog` and is
rewritten atomically after every change, so an install that dies half-way
(power loss, ``kill -9``) can still be rolled back by ``webappctl uninstall``.
The journal is removed once the log has been fully drained.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from .errors import WebappctlError
from .models import ProvisionedResource


class StateError(WebappctlError):
    """Raised when a resource journal cannot be read or written."""


@dataclass(frozen=True)
class ResourceJournal:
    """YAML-backed persistence for one application's resource log."""

    root: Path
    code_name: str

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    @property
    def path(self) -> Path:
        """Return the journal file path."""
        return self.root / f"{self.code_name}.yml"

    def exists(self) -> bool:
        """Return ``True`` when a journal is present on disk."""
        return self.path.exists()

    def load(self) -> list[ProvisionedResource]:
        """Return the journaled entries oldest-first (empty when missing)."""
        path = self.path
        if not path.exists():
            return []
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateError(f"Failed to parse journal {path}: {exc}") from exc
        if data is None:
            return []
        if not isinstance(data, Mapping):
            raise StateError(f"Journal {path} must contain a mapping.")
        raw_entries = data.get("resources") or []
        if not isinstance(raw_entries, list):
            raise StateError(f"Journal {path} has a malformed 'resources' list.")
        entries: list[ProvisionedResource] = []
        for item in raw_entries:
            if not isinstance(item, Mapping):
                raise StateError(f"Journal {path} contains a non-mapping entry: {item!r}")
            try:
                entries.append(ProvisionedResource.from_dict(dict(item)))
            except (KeyError, ValueError) as exc:
                raise StateError(f"Journal {path} contains an invalid entry: {exc}") from exc
        return entries

    def save(self, entries: Iterable[ProvisionedResource]) -> None:
        """Atomically replace the journal with *entries*."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path
        payload = {
            "code_name": self.code_name,
            "resources": [entry.to_dict() for entry in entries],
        }
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o640)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def delete(self) -> None:
        """Remove the journal file if present."""
        self.path.unlink(missing_ok=True)


__all__ = ["ResourceJournal", "StateError"]
