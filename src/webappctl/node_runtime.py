"""Helpers for provisioning Node.js applications through a system-wide nvm."""
from __future__ import annotations

import json
import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .errors import ExternalCommandError, PreflightError
from .runner import CommandRunner

LOGGER = logging.getLogger(__name__)

NVMRC_CONTENT = "lts/*\n"


@dataclass(slots=True)
class NodeVersionInfo:
    """Parsed ``node -v`` output."""

    raw: str
    version: Version

    @property
    def major(self) -> int:
        """Return the major version number."""
        return self.version.major


def parse_node_version(output: str) -> NodeVersionInfo | None:
    """Parse ``v20.11.1`` style output; return ``None`` when unrecognised."""
    raw = output.strip()
    if not raw:
        return None
    try:
        version = Version(raw.lstrip("v"))
    except InvalidVersion:
        return None
    return NodeVersionInfo(raw=raw, version=version)


def audit_total(report: str) -> int:
    """Return ``metadata.vulnerabilities.total`` from ``npm audit --json`` output."""
    try:
        payload = json.loads(report or "{}")
    except json.JSONDecodeError:
        return 0
    metadata = payload.get("metadata") if isinstance(payload, dict) else None
    vulnerabilities = metadata.get("vulnerabilities") if isinstance(metadata, dict) else None
    if not isinstance(vulnerabilities, dict):
        return 0
    total = vulnerabilities.get("total", 0)
    return total if isinstance(total, int) else 0


@dataclass(slots=True)
class NvmRuntime:
    """Drive nvm, node and npm, always with ``nvm.sh`` sourced first."""

    runner: CommandRunner
    nvm_dir: Path = Path("/usr/local/nvm")
    bash_bin: str = "/bin/bash"
    curl_bin: str = "curl"

    @property
    def nvm_script(self) -> Path:
        """Return the path of ``nvm.sh``."""
        return self.nvm_dir / "nvm.sh"

    def is_installed(self) -> bool:
        """Return ``True`` once ``nvm.sh`` is in place; a bare directory is a failed install."""
        return self.nvm_script.is_file()

    def install_nvm(self, installer_url: str) -> None:
        """Install nvm into :attr:`nvm_dir` using the pinned upstream installer."""
        self.nvm_dir.mkdir(parents=True, exist_ok=True)
        # Every app user installs Node versions into this shared tree.
        self.nvm_dir.chmod(0o777)
        script = (
            f"{shlex.quote(self.curl_bin)} -fsSL {shlex.quote(installer_url)} "
            f"| NVM_DIR={shlex.quote(str(self.nvm_dir))} {shlex.quote(self.bash_bin)}"
        )
        self.runner.run([self.bash_bin, "-c", script])
        result = self.shell("command -v nvm", check=False)
        if result.returncode != 0:
            raise PreflightError(f"nvm installation into {self.nvm_dir} could not be verified.")

    def shell(
        self,
        script: str,
        *,
        user: str | None = None,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *script* in bash with nvm loaded, optionally as *user*."""
        prelude = f'export NVM_DIR={shlex.quote(str(self.nvm_dir))}; . "$NVM_DIR/nvm.sh"; '
        return self.runner.run(
            [self.bash_bin, "-c", prelude + script], user=user, cwd=cwd, check=check
        )

    def detect_version(
        self, *, user: str | None = None, cwd: Path | None = None
    ) -> NodeVersionInfo | None:
        """Return the Node version nvm resolves for *user* in *cwd*."""
        try:
            result = self.shell("node -v", user=user, cwd=cwd, check=False)
        except ExternalCommandError as exc:
            LOGGER.debug("node -v failed: %s", exc)
            return None
        if result.returncode != 0:
            return None
        return parse_node_version(result.stdout or "")

    def setup_project(self, app_dir: Path, user: str) -> NodeVersionInfo:
        """Install the LTS toolchain and the project's dependencies as *user*."""
        (app_dir / ".nvmrc").write_text(NVMRC_CONTENT, encoding="utf-8")
        self.shell("nvm install --lts && nvm use --lts", user=user, cwd=app_dir)
        self.shell("npm install -g npm@latest", user=user, cwd=app_dir)

        if (app_dir / "package.json").exists():
            self.shell("npm install", user=user, cwd=app_dir)
            self._audit(app_dir, user)
        else:
            self.shell("npm init -y", user=user, cwd=app_dir)

        info = self.detect_version(user=user, cwd=app_dir)
        if info is None:
            raise ExternalCommandError(
                ["node", "-v"], None, message="Unable to determine the installed Node.js version."
            )
        self.shell(
            f"npm pkg set engines.node={shlex.quote(info.raw)}", user=user, cwd=app_dir
        )
        LOGGER.debug("Node.js %s ready in %s", info.raw, app_dir)
        return info

    def verify(self, user: str, app_dir: Path) -> bool:
        """Return ``True`` when both ``node`` and ``npm`` work for *user*."""
        result = self.shell(
            "command -v node && command -v npm && node --version && npm --version",
            user=user,
            cwd=app_dir,
            check=False,
        )
        return result.returncode == 0

    def _audit(self, app_dir: Path, user: str) -> None:
        fix = self.shell("npm audit fix", user=user, cwd=app_dir, check=False)
        if fix.returncode != 0:
            LOGGER.warning("npm audit fix exited %s; continuing", fix.returncode)
        # npm audit exits non-zero whenever vulnerabilities remain.
        report = self.shell("npm audit --json", user=user, cwd=app_dir, check=False)
        if audit_total(report.stdout or "") > 0:
            LOGGER.info("Vulnerabilities remain after npm audit fix; forcing fixes")
            forced = self.shell("npm audit fix --force", user=user, cwd=app_dir, check=False)
            if forced.returncode != 0:
                LOGGER.warning("npm audit fix --force exited %s; continuing", forced.returncode)


__all__ = ["NVMRC_CONTENT", "NodeVersionInfo", "NvmRuntime", "audit_total", "parse_node_version"]
