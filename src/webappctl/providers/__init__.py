"""Provider interfaces for webappctl."""
from __future__ import annotations

from .nginx import NginxProvider
from .systemd import SystemdProvider

__all__ = ["NginxProvider", "SystemdProvider"]
