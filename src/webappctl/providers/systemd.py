"""Systemd provider for managing application service units."""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ..runner import CommandRunner
from ..templates import write_if_changed

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SystemdProvider:
    """Write and drive systemd service units through ``systemctl``."""

    runner: CommandRunner
    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def unit_path(self, unit: str) -> Path:
        """Return the full path for the unit file named *unit*."""
        return self.unit_dir / unit

    def write_unit(self, unit: str, content: str) -> bool:
        """Write *content* as *unit*; return whether it changed.

        Callers must follow up with :meth:`daemon_reload`.
        """
        return write_if_changed(self.unit_path(unit), content, mode=0o644)

    def remove_unit(self, unit: str) -> bool:
        """Delete the unit file and reload the daemon; return whether a file was removed."""
        path = self.unit_path(unit)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        self.daemon_reload()
        return True

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        """Ask systemd to re-read unit files."""
        return self._systemctl("daemon-reload")

    def enable(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Enable *unit* at boot."""
        return self._systemctl("enable", unit)

    def disable(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Disable *unit* at boot."""
        return self._systemctl("disable", unit)

    def start(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Start *unit*."""
        return self._systemctl("start", unit)

    def stop(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Stop *unit*."""
        return self._systemctl("stop", unit)

    def is_active(self, unit: str) -> bool:
        """Return ``True`` when ``systemctl is-active`` reports *unit* active."""
        result = self._systemctl("is-active", unit, check=False)
        return result.returncode == 0 and (result.stdout or "").strip() == "active"

    def unit_exists(self, unit: str) -> bool:
        """Return ``True`` when the unit file is present on disk."""
        return self.unit_path(unit).exists()

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self.runner.run(args, check=check, timeout=120)


__all__ = ["SystemdProvider"]
