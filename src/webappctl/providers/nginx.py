"""Nginx provider for managing reverse-proxy site configurations.

Configuration changes are applied with ``nginx -s reload`` and only after
``nginx -t`` has passed; the provider never restarts nginx, so a bad site
cannot take down the other sites served by the same host.
"""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ..runner import CommandRunner
from ..templates import write_if_changed

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class NginxProvider:
    """Write, enable and validate nginx sites for webappctl applications."""

    runner: CommandRunner
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    systemctl_bin: str = "systemctl"

    def site_path(self, site: str) -> Path:
        """Return the path to the site configuration file."""
        return self.sites_available / site

    def enabled_path(self, site: str) -> Path:
        """Return the path of the symlink in sites-enabled for *site*."""
        return self.sites_enabled / site

    def write_site(self, site: str, content: str) -> bool:
        """Write the site configuration; return whether it changed."""
        return write_if_changed(self.site_path(site), content, mode=0o644)

    def enable(self, site: str) -> bool:
        """Create the sites-enabled symlink; return ``False`` when already correct."""
        source = self.site_path(site)
        target = self.enabled_path(site)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists() or target.is_symlink():
            if self.is_enabled(site):
                return False
            target.unlink()
        target.symlink_to(source)
        return True

    def disable(self, site: str) -> bool:
        """Remove the sites-enabled symlink; return whether one was removed."""
        target = self.enabled_path(site)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        return True

    def remove(self, site: str) -> bool:
        """Remove the site configuration file; return whether one was removed."""
        try:
            self.site_path(site).unlink()
        except FileNotFoundError:
            return False
        return True

    def site_exists(self, site: str) -> bool:
        """Return ``True`` when the site configuration exists."""
        return self.site_path(site).exists()

    def is_enabled(self, site: str) -> bool:
        """Return ``True`` when the symlink resolves to the site configuration."""
        target = self.enabled_path(site)
        if not target.is_symlink():
            return False
        try:
            return target.resolve(strict=True) == self.site_path(site).resolve(strict=True)
        except FileNotFoundError:
            return False

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t``; raises when the configuration is invalid."""
        return self.runner.run([self.nginx_bin, "-t"], timeout=60)

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Signal nginx to reload its configuration."""
        return self.runner.run([self.nginx_bin, "-s", "reload"], timeout=60)

    def test_and_reload(self) -> None:
        """Validate the configuration and reload only when validation passed."""
        self.test_config()
        self.reload()

    def is_active(self) -> bool:
        """Return ``True`` when the nginx service is active."""
        result = self.runner.run(
            [self.systemctl_bin, "is-active", "nginx"], check=False, timeout=60
        )
        return result.returncode == 0 and (result.stdout or "").strip() == "active"


__all__ = ["NginxProvider"]
