"""Drive the service unit and nginx site through their lifecycle states.

Each managed unit only ever moves forward::

    ABSENT -> WRITTEN -> ENABLED -> STARTED -> VERIFIED

and every transition is recorded in the :class:`ResourceLog` as soon as the
host has changed, before the next transition starts. A failure at any point
raises :class:`LifecycleError` with the last state reached; undoing the
recorded transitions is the job of :mod:`webappctl.teardown`.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from .errors import ExternalCommandError, LifecycleError, WebappctlError
from .models import ProvisioningConfig, ResourceKind, ResourceLog, UnitState
from .ports import PortProbe
from .providers.nginx import NginxProvider
from .providers.systemd import SystemdProvider

LOGGER = logging.getLogger(__name__)

RuntimeCheck = Callable[[ProvisioningConfig], bool]


@dataclass(slots=True)
class ManagedUnit:
    """A service or site and the furthest lifecycle state it has reached."""

    name: str
    kind: Literal["service", "site"]
    state: UnitState = UnitState.ABSENT

    def advance(self, target: UnitState) -> None:
        """Move to *target*, which must be the next state."""
        if target != self.state + 1:
            raise ValueError(
                f"{self.name}: cannot move from {self.state.name} to {target.name}."
            )
        LOGGER.debug("%s %s -> %s", self.kind, self.name, target.name)
        self.state = target


@dataclass(slots=True)
class LifecycleController:
    """Write, enable, start and verify the application's service and site."""

    systemd: SystemdProvider
    nginx: NginxProvider
    ports: PortProbe
    log: ResourceLog
    runtime_check: RuntimeCheck
    retries: int = 10
    delay: float = 1.5
    sleep: Callable[[float], None] = time.sleep

    def deploy_service(self, config: ProvisioningConfig, text: str) -> ManagedUnit:
        """Install the unit file *text* and bring the service to ``VERIFIED``."""
        unit = ManagedUnit(name=config.unit_name, kind="service")
        try:
            self.systemd.write_unit(unit.name, text)
            self.log.record(ResourceKind.UNIT_FILE_WRITTEN, self.systemd.unit_path(unit.name))
            self.systemd.daemon_reload()
            unit.advance(UnitState.WRITTEN)

            self.systemd.enable(unit.name)
            self.log.record(ResourceKind.UNIT_ENABLED, unit.name)
            unit.advance(UnitState.ENABLED)

            self.systemd.start(unit.name)
            self.log.record(ResourceKind.UNIT_STARTED, unit.name)
            unit.advance(UnitState.STARTED)

            self._verify_service(config)
            unit.advance(UnitState.VERIFIED)
        except (WebappctlError, OSError) as exc:
            raise LifecycleError(unit.name, unit.state, exc) from exc
        return unit

    def deploy_site(self, config: ProvisioningConfig, text: str) -> ManagedUnit:
        """Install the site *text*, enable it and reload nginx after a clean test."""
        unit = ManagedUnit(name=config.site_name, kind="site")
        try:
            self.nginx.write_site(unit.name, text)
            self.log.record(ResourceKind.SITE_FILE_WRITTEN, self.nginx.site_path(unit.name))
            unit.advance(UnitState.WRITTEN)

            self.nginx.enable(unit.name)
            self.log.record(ResourceKind.SITE_ENABLED, self.nginx.enabled_path(unit.name))
            unit.advance(UnitState.ENABLED)

            self.nginx.test_and_reload()
            self.log.record(ResourceKind.NGINX_RELOADED, unit.name)
            unit.advance(UnitState.STARTED)

            self._verify_site(unit.name)
            unit.advance(UnitState.VERIFIED)
        except (WebappctlError, OSError) as exc:
            raise LifecycleError(unit.name, unit.state, exc) from exc
        return unit

    # ------------------------------------------------------------------
    def _verify_service(self, config: ProvisioningConfig) -> None:
        if not self.runtime_check(config):
            raise ExternalCommandError(
                [],
                None,
                message=f"{config.runtime.value} runtime for {config.code_name} is not usable.",
            )
        for attempt in range(1, self.retries + 1):
            if self.ports.is_listening(config.port):
                LOGGER.debug("%s listening on %s", config.unit_name, config.port)
                return
            # Type=simple units are active as soon as they run; a crash leaves them
            # waiting out RestartSec.
            if not self.systemd.is_active(config.unit_name):
                raise ExternalCommandError(
                    ["systemctl", "is-active", config.unit_name],
                    None,
                    message=f"{config.unit_name} exited before listening on port {config.port}.",
                )
            if attempt < self.retries:
                self.sleep(self.delay)
        raise ExternalCommandError(
            [],
            None,
            message=(
                f"{config.unit_name} is not listening on port {config.port} "
                f"after {self.retries} checks."
            ),
        )

    def _verify_site(self, site: str) -> None:
        if not self.nginx.is_enabled(site):
            raise ExternalCommandError(
                [], None, message=f"Site symlink for {site} does not resolve to its config."
            )
        self.nginx.test_config()
        if not self.nginx.is_active():
            raise ExternalCommandError(
                ["systemctl", "is-active", "nginx"], None, message="nginx is not active."
            )


__all__ = ["LifecycleController", "ManagedUnit", "RuntimeCheck"]
