"""Host prerequisite checks that run before anything is provisioned.

Every step is idempotent: an already-installed package or an already-running
nginx counts as success. Failures surface as :class:`PreflightError`; at this
point no application resources exist, so nothing needs to be torn down.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .errors import ExternalCommandError, PreflightError
from .models import ProvisioningConfig, Runtime
from .node_runtime import NvmRuntime
from .ports import PortProbe
from .runner import CommandRunner

LOGGER = logging.getLogger(__name__)

_UPGRADABLE = re.compile(r"^(\d+) upgraded", re.MULTILINE)
PYTHON_PACKAGES = ("python3-venv", "python3-pip")


def count_upgradable(simulation: str) -> int:
    """Return the number of upgradable packages in ``apt-get -s upgrade`` output."""
    match = _UPGRADABLE.search(simulation)
    return int(match.group(1)) if match else 0


@dataclass(slots=True)
class PreflightChecker:
    """Bring the host to a state where an application can be provisioned."""

    runner: CommandRunner
    ports: PortProbe
    node: NvmRuntime
    nvm_installer_url: str
    apt_bin: str = "apt-get"
    systemctl_bin: str = "systemctl"
    nginx_bin: str = "nginx"
    skip_updates: bool = False
    which: Callable[[str], str | None] = shutil.which
    steps: list[str] = field(default_factory=list)

    def ensure_packages_updated(self) -> bool:
        """Refresh the package index and upgrade when updates exist.

        Returns ``True`` when an upgrade was performed.
        """
        if self.skip_updates:
            LOGGER.info("Skipping package index refresh")
            self.steps.append("packages:skipped")
            return False
        self._apt(["update"])
        simulation = self._apt(["-s", "upgrade"])
        pending = count_upgradable(simulation)
        if pending == 0:
            self.steps.append("packages:up-to-date")
            return False
        LOGGER.info("%s packages can be upgraded; upgrading", pending)
        self._apt(["upgrade", "-y"])
        self.steps.append(f"packages:upgraded:{pending}")
        return True

    def ensure_nginx_installed(self) -> bool:
        """Install nginx when missing and make sure it is running.

        Returns ``True`` when nginx had to be installed.
        """
        installed = False
        if self.which(self.nginx_bin) is None:
            LOGGER.info("nginx not found; installing")
            self._apt(["install", "-y", "nginx"])
            installed = True
        self._run([self.systemctl_bin, "start", "nginx"])
        self.steps.append("nginx:installed" if installed else "nginx:present")
        return installed

    def ensure_runtime_installed(self, runtime: Runtime) -> bool:
        """Install the toolchain *runtime* needs; return ``True`` when work was done."""
        if runtime is Runtime.NODE:
            if self.node.is_installed():
                self.steps.append("runtime:nvm-present")
                return False
            LOGGER.info("nvm not found; installing into %s", self.node.nvm_dir)
            try:
                self.node.install_nvm(self.nvm_installer_url)
            except (ExternalCommandError, OSError) as exc:
                raise PreflightError(f"Failed to install nvm: {exc}") from exc
            self.steps.append("runtime:nvm-installed")
            return True
        self._apt(["install", "-y", *PYTHON_PACKAGES])
        self.steps.append("runtime:python-venv")
        return True

    def ensure_port_free(self, port: int) -> None:
        """Raise :class:`PortInUseError` when *port* already has a listener."""
        self.ports.ensure_free(port)
        self.steps.append(f"port:{port}:free")

    def run(self, config: ProvisioningConfig) -> list[str]:
        """Run every check for *config* in order and return the step log."""
        self.ensure_packages_updated()
        self.ensure_nginx_installed()
        self.ensure_runtime_installed(config.runtime)
        self.ensure_port_free(config.port)
        return list(self.steps)

    # ------------------------------------------------------------------
    def _apt(self, args: Sequence[str]) -> str:
        env = dict(os.environ)
        env["DEBIAN_FRONTEND"] = "noninteractive"
        return self._run([self.apt_bin, *args], env=env)

    def _run(self, args: Sequence[str], env: dict[str, str] | None = None) -> str:
        try:
            result = self.runner.run(args, env=env)
        except ExternalCommandError as exc:
            raise PreflightError(str(exc)) from exc
        return (result.stdout or "") + (result.stderr or "")


__all__ = ["PYTHON_PACKAGES", "PreflightChecker", "count_upgradable"]
