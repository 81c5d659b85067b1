"""Undo provisioning, either from a resource log or as a full uninstall sweep.

:meth:`Teardown.teardown` replays a :class:`ResourceLog` newest-first and
applies the inverse of each recorded mutation. :meth:`Teardown.uninstall`
does not need a log: it removes every artifact an installed application can
have. Neither ever raises for a failed inverse action; failures are logged
and returned as :class:`PartialTeardownWarning` entries so the operator can
finish the cleanup by hand.
"""
from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .accounts import AppAccountSpec, AppAccountStatus, inspect_account
from .errors import ApplicationNotFoundError, PartialTeardownWarning
from .models import ProvisionedResource, ResourceKind, ResourceLog
from .providers.nginx import NginxProvider
from .providers.systemd import SystemdProvider
from .runner import CommandRunner
from .state import ResourceJournal
from .validators import validate_code_name

LOGGER = logging.getLogger(__name__)

_PATH_KINDS = {
    ResourceKind.SITE_ENABLED,
    ResourceKind.SITE_FILE_WRITTEN,
    ResourceKind.UNIT_FILE_WRITTEN,
    ResourceKind.DEPENDENCIES_INSTALLED,
    ResourceKind.REPOSITORY_CLONED,
    ResourceKind.DIRECTORY_CREATED,
}


@dataclass(slots=True)
class TeardownReport:
    """What a teardown or uninstall removed and what it could not."""

    undone: list[ProvisionedResource] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    warnings: list[PartialTeardownWarning] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        """Return ``True`` when every inverse action succeeded."""
        return not self.warnings

    def warn(self, message: str) -> None:
        """Log *message* and collect it as a :class:`PartialTeardownWarning`."""
        LOGGER.warning(message)
        self.warnings.append(PartialTeardownWarning(message))

    def messages(self) -> list[str]:
        """Return the warning texts."""
        return [str(warning) for warning in self.warnings]


def _remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


def _empty_directory(path: Path) -> None:
    if not path.is_dir():
        return
    for child in path.iterdir():
        _remove_tree(child)


@dataclass(slots=True)
class Teardown:
    """Apply inverse actions for provisioned resources."""

    runner: CommandRunner
    systemd: SystemdProvider
    nginx: NginxProvider
    www_root: Path = Path("/var/www")
    environment_dir: Path = Path("/etc/environment.d")
    app_log_dir: Path = Path("/var/log")
    journal_root: Path = Path("/var/lib/webappctl/journals")
    userdel_bin: str = "userdel"

    def teardown(self, log: ResourceLog) -> TeardownReport:
        """Undo *log* newest-first; never raises.

        An entry leaves the log, and its journal, only after its undo step ran.
        """
        report = TeardownReport()
        reload_pending = False
        while log:
            entry = log.last()
            LOGGER.info("Undoing %s %s", entry.kind.value, entry.identifier)
            try:
                if entry.kind is ResourceKind.NGINX_RELOADED:
                    reload_pending = True
                elif entry.kind is ResourceKind.SITE_ENABLED:
                    Path(entry.identifier).unlink(missing_ok=True)
                    if reload_pending:
                        reload_pending = False
                        self.nginx.test_and_reload()
                else:
                    self._undo(entry)
            except Exception as exc:  # noqa: BLE001 - collected, teardown continues
                report.warn(f"Could not undo {entry.kind.value} {entry.identifier}: {exc}")
            else:
                report.undone.append(entry)
                report.steps.append(f"{entry.kind.value}:{entry.identifier}")
            log.pop_last()
        if reload_pending:
            self._attempt(report, "reload nginx", self.nginx.test_and_reload)
        return report

    def _account(self, code_name: str) -> tuple[AppAccountSpec, AppAccountStatus]:
        spec = AppAccountSpec(name=code_name, home=self.www_root / code_name)
        return spec, inspect_account(spec)

    def application_exists(self, code_name: str) -> bool:
        """Return ``True`` when any trace of *code_name* remains on the host.

        A user of that name only counts when its home is the app directory.
        """
        unit = f"{code_name}.service"
        spec, account = self._account(code_name)
        return any(
            (
                account.user_exists and account.home == spec.home,
                (self.www_root / code_name).exists(),
                self.systemd.unit_exists(unit),
                self.nginx.site_exists(code_name),
                self.nginx.enabled_path(code_name).is_symlink(),
                ResourceJournal(self.journal_root, code_name).exists(),
            )
        )

    def uninstall(self, code_name: str, *, force: bool = False) -> TeardownReport:
        """Remove every artifact of *code_name*.

        Raises :class:`ApplicationNotFoundError` when nothing is installed
        under that name, unless *force* is set.
        """
        code_name = validate_code_name(code_name)
        if not force and not self.application_exists(code_name):
            raise ApplicationNotFoundError(f"No application named '{code_name}' is installed.")

        report = TeardownReport()
        unit = f"{code_name}.service"
        if self.systemd.unit_exists(unit):
            self._attempt(report, f"stop {unit}", lambda: self.systemd.stop(unit))
            self._attempt(report, f"disable {unit}", lambda: self.systemd.disable(unit))
            self._attempt(report, f"remove {unit}", lambda: self.systemd.remove_unit(unit))

        enabled = self.nginx.enabled_path(code_name)
        if self.nginx.site_exists(code_name) or enabled.is_symlink():
            self._attempt(
                report, f"disable site {code_name}", lambda: self.nginx.disable(code_name)
            )
            self._attempt(
                report, f"remove site {code_name}", lambda: self.nginx.remove(code_name)
            )
            self._attempt(report, "reload nginx", self.nginx.test_and_reload)

        spec, account = self._account(code_name)
        if account.user_exists and account.home == spec.home:
            self._attempt(
                report,
                f"delete user {code_name}",
                lambda: self.runner.run([self.userdel_bin, "-r", code_name]),
            )
        elif account.user_exists:
            report.warn(
                f"Kept user {code_name}: its home is {account.home}, not {spec.home}, "
                "so it was not created by webappctl."
            )

        app_dir = self.www_root / code_name
        if app_dir.exists() or app_dir.is_symlink():
            self._attempt(report, f"remove {app_dir}", lambda: _remove_tree(app_dir))

        env_file = self.environment_dir / f"{code_name}.conf"
        if env_file.exists():
            self._attempt(report, f"remove {env_file}", lambda: env_file.unlink())

        for log_file in sorted(self.app_log_dir.glob(f"{code_name}*.log")):
            self._attempt(report, f"remove {log_file}", log_file.unlink)

        self._sweep_journal(code_name, report)
        return report

    # ------------------------------------------------------------------
    def _undo(self, entry: ProvisionedResource) -> None:
        kind = entry.kind
        target = entry.identifier
        if kind is ResourceKind.SITE_FILE_WRITTEN:
            Path(target).unlink(missing_ok=True)
        elif kind is ResourceKind.UNIT_STARTED:
            self.systemd.stop(target)
        elif kind is ResourceKind.UNIT_ENABLED:
            self.systemd.disable(target)
        elif kind is ResourceKind.UNIT_FILE_WRITTEN:
            Path(target).unlink(missing_ok=True)
            self.systemd.daemon_reload()
        elif kind is ResourceKind.DEPENDENCIES_INSTALLED:
            _remove_tree(Path(target))
        elif kind is ResourceKind.REPOSITORY_CLONED:
            _empty_directory(Path(target))
        elif kind is ResourceKind.DIRECTORY_CREATED:
            _remove_tree(Path(target))
        elif kind is ResourceKind.USER_CREATED:
            self.runner.run([self.userdel_bin, target])
        else:  # pragma: no cover - every kind is handled above
            raise ValueError(f"Unknown resource kind {kind!r}")

    def _attempt(self, report: TeardownReport, label: str, action: Callable[[], object]) -> None:
        try:
            action()
        except Exception as exc:  # noqa: BLE001 - collected, teardown continues
            report.warn(f"Could not {label}: {exc}")
        else:
            report.steps.append(label)

    def _sweep_journal(self, code_name: str, report: TeardownReport) -> None:
        journal = ResourceJournal(self.journal_root, code_name)
        try:
            leftovers = journal.load()
        except Exception as exc:  # noqa: BLE001 - collected, teardown continues
            report.warn(f"Could not read journal {journal.path}: {exc}")
            leftovers = []
        # The sweep above already covered users and units; only stray paths remain.
        for entry in reversed(leftovers):
            path = Path(entry.identifier)
            if entry.kind in _PATH_KINDS and (path.exists() or path.is_symlink()):
                if entry.kind is ResourceKind.REPOSITORY_CLONED:
                    self._attempt(report, f"empty {path}", lambda p=path: _empty_directory(p))
                else:
                    self._attempt(report, f"remove {path}", lambda p=path: _remove_tree(p))
        if journal.exists():
            self._attempt(report, f"remove journal {journal.path}", journal.delete)


__all__ = ["Teardown", "TeardownReport"]
