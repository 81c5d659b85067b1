"""Top-level install flow: preflight, provision, render, deploy, or roll back."""
from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import AppConfig
from .errors import PreflightError, ProvisioningInterrupted
from .lifecycle import LifecycleController, ManagedUnit
from .locking import LockManager
from .logging import OperationScope
from .models import ProvisionedResource, ProvisioningConfig, ResourceLog, Runtime, UnitState
from .node_runtime import NvmRuntime
from .ports import PortProbe
from .preflight import PreflightChecker
from .providers.nginx import NginxProvider
from .providers.systemd import SystemdProvider
from .provisioner import ResourceProvisioner
from .python_runtime import VenvRuntime
from .render import render_reverse_proxy_site, render_service_unit
from .runner import CommandRunner
from .state import ResourceJournal
from .teardown import Teardown, TeardownReport
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkflowResult:
    """Outcome of a successful install."""

    config: ProvisioningConfig
    service: ManagedUnit
    site: ManagedUnit
    resources: tuple[ProvisionedResource, ...]
    preflight_steps: list[str] = field(default_factory=list)
    report: TeardownReport | None = None

    @property
    def service_state(self) -> UnitState:
        """Return the final state of the service unit."""
        return self.service.state

    @property
    def site_state(self) -> UnitState:
        """Return the final state of the nginx site."""
        return self.site.state


@dataclass(slots=True)
class ProvisioningWorkflow:
    """Wire the components together for one application install."""

    app_config: AppConfig
    runner: CommandRunner
    locks: LockManager
    skip_updates: bool = False
    engine: TemplateEngine | None = None
    sleep: Callable[[float], None] = time.sleep
    which: Callable[[str], str | None] = shutil.which
    last_report: TeardownReport | None = None

    # Component factories ---------------------------------------------
    def systemd(self) -> SystemdProvider:
        """Return the systemd provider for this host."""
        return SystemdProvider(
            runner=self.runner,
            unit_dir=self.app_config.systemd.unit_dir,
            systemctl_bin=self.app_config.systemd.systemctl_bin,
        )

    def nginx(self) -> NginxProvider:
        """Return the nginx provider for this host."""
        return NginxProvider(
            runner=self.runner,
            sites_available=self.app_config.nginx.sites_available,
            sites_enabled=self.app_config.nginx.sites_enabled,
            nginx_bin=self.app_config.nginx.nginx_bin,
            systemctl_bin=self.app_config.systemd.systemctl_bin,
        )

    def node_runtime(self, config: ProvisioningConfig) -> NvmRuntime:
        """Return the nvm wrapper for *config*."""
        return NvmRuntime(runner=self.runner, nvm_dir=config.nvm_dir)

    def python_runtime(self) -> VenvRuntime:
        """Return the venv helper configured for this host."""
        python = self.app_config.python
        return VenvRuntime(
            runner=self.runner,
            python_bin=python.python_bin,
            venv_name=python.venv_name,
            extra_packages=python.extra_packages,
        )

    def teardown(self) -> Teardown:
        """Return a :class:`Teardown` bound to this host's paths."""
        return Teardown(
            runner=self.runner,
            systemd=self.systemd(),
            nginx=self.nginx(),
            www_root=self.app_config.www_root,
            environment_dir=self.app_config.environment_dir,
            app_log_dir=self.app_config.app_log_dir,
            journal_root=self.app_config.journal_dir,
        )

    def journal(self, code_name: str) -> ResourceJournal:
        """Return the resource journal for *code_name*."""
        return ResourceJournal(self.app_config.journal_dir, code_name)

    # Flow ------------------------------------------------------------
    def install(
        self,
        config: ProvisioningConfig,
        *,
        op: OperationScope | None = None,
    ) -> WorkflowResult:
        """Provision *config* end to end, rolling back on any failure."""
        self.last_report = None
        try:
            with self.locks.instance_lock(config.code_name) as handle:
                if op is not None:
                    op.set_lock_wait_ms(handle.wait_ms)
                return self._install_locked(config, op)
        except KeyboardInterrupt as exc:
            raise ProvisioningInterrupted("Provisioning interrupted by operator.") from exc

    def _install_locked(
        self,
        config: ProvisioningConfig,
        op: OperationScope | None,
    ) -> WorkflowResult:
        journal = self.journal(config.code_name)
        if journal.exists():
            raise PreflightError(
                f"A previous run for '{config.code_name}' left {journal.path}; "
                f"run 'webappctl uninstall {config.code_name}' first."
            )

        node = self.node_runtime(config)
        ports = PortProbe(runner=self.runner)
        preflight = PreflightChecker(
            runner=self.runner,
            ports=ports,
            node=node,
            nvm_installer_url=self.app_config.node.installer_url(),
            nginx_bin=self.app_config.nginx.nginx_bin,
            systemctl_bin=self.app_config.systemd.systemctl_bin,
            skip_updates=self.skip_updates,
            which=self.which,
        )
        preflight_steps = preflight.run(config)
        _step(op, "preflight", ", ".join(preflight_steps))

        log = ResourceLog(journal=journal)
        python = self.python_runtime()
        provisioner = ResourceProvisioner(runner=self.runner, log=log, node=node, python=python)
        lifecycle = LifecycleController(
            systemd=self.systemd(),
            nginx=self.nginx(),
            ports=ports,
            log=log,
            runtime_check=lambda cfg: _runtime_ready(cfg, node, python),
            retries=self.app_config.verify.retries,
            delay=self.app_config.verify.delay,
            sleep=self.sleep,
        )
        engine = self.engine or TemplateEngine.with_overrides(self.app_config.templates_dir)

        try:
            provisioner.provision(config)
            _step(op, "provision", str(config.app_dir))
            service_text = render_service_unit(config, engine=engine)
            site_text = render_reverse_proxy_site(config, engine=engine)
            _step(op, "render")
            service = lifecycle.deploy_service(config, service_text)
            _step(op, "service", service.state.name)
            site = lifecycle.deploy_site(config, site_text)
            _step(op, "site", site.state.name)
        except BaseException as exc:
            LOGGER.error("Provisioning %s failed: %s", config.code_name, exc)
            _step(op, "failed", str(exc), status="error")
            self.last_report = self._rollback(log, op)
            raise

        resources = log.entries
        journal.delete()
        return WorkflowResult(
            config=config,
            service=service,
            site=site,
            resources=resources,
            preflight_steps=preflight_steps,
        )

    def _rollback(self, log: ResourceLog, op: OperationScope | None) -> TeardownReport:
        if not log:
            return TeardownReport()
        report = self.teardown().teardown(log)
        status = "success" if report.clean else "warning"
        _step(op, "teardown", f"{len(report.undone)} undone", status=status)
        for message in report.messages():
            _step(op, "teardown-warning", message, status="warning")
        return report


def _runtime_ready(config: ProvisioningConfig, node: NvmRuntime, python: VenvRuntime) -> bool:
    if config.runtime is Runtime.NODE:
        return node.verify(config.code_name, config.app_dir)
    return python.verify(config.code_name, config.app_dir)


def _step(
    op: OperationScope | None,
    name: str,
    detail: str | None = None,
    *,
    status: str = "success",
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = ["ProvisioningWorkflow", "WorkflowResult"]
