"""Helpers for provisioning FastAPI applications inside a virtual environment."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .runner import CommandRunner

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class VenvRuntime:
    """Create a project venv and install requirements as the app user."""

    runner: CommandRunner
    python_bin: str = "python3"
    venv_name: str = "venv"
    extra_packages: Sequence[str] = field(default_factory=lambda: ("uvloop", "httptools"))

    def venv_dir(self, app_dir: Path) -> Path:
        """Return the virtual environment directory for *app_dir*."""
        return app_dir / self.venv_name

    def bin_dir(self, app_dir: Path) -> Path:
        """Return the ``bin`` directory inside the venv."""
        return self.venv_dir(app_dir) / "bin"

    def setup_project(self, app_dir: Path, user: str) -> Path:
        """Build the venv and install the project's requirements; return the venv path."""
        venv = self.venv_dir(app_dir)
        self.runner.run([self.python_bin, "-m", "venv", self.venv_name], user=user, cwd=app_dir)
        pip = str(self.bin_dir(app_dir) / "pip")
        self.runner.run(
            [pip, "install", "--no-cache-dir", "-r", "requirements.txt"],
            user=user,
            cwd=app_dir,
        )
        if self.extra_packages:
            self.runner.run(
                [pip, "install", "--no-cache-dir", *self.extra_packages],
                user=user,
                cwd=app_dir,
            )
        LOGGER.debug("Virtual environment ready at %s", venv)
        return venv

    def verify(self, user: str, app_dir: Path) -> bool:
        """Return ``True`` when the venv interpreter and pip both run for *user*."""
        bin_dir = self.bin_dir(app_dir)
        for tool in ("python", "pip"):
            result = self.runner.run(
                [str(bin_dir / tool), "--version"], user=user, cwd=app_dir, check=False
            )
            if result.returncode != 0:
                return False
        return True


__all__ = ["VenvRuntime"]
