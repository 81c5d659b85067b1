"""Pytest configuration helpers for the test suite.

Most suites run against :class:`FakeHost`, an in-memory stand-in for the
commands webappctl shells out to (``adduser``, ``git``, ``systemctl``,
``nginx``, ``ss`` and friends). Files the real commands would create, such as
the app home, the checkout or ``node_modules``, are created under ``tmp_path``
so teardown can be asserted against the filesystem.
"""

from __future__ import annotations

import grp
import json
import pwd
import shlex
import shutil
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace

import pytest

from webappctl.config import AppConfig, load_config
from webappctl.errors import ExternalCommandError, ExternalCommandTimeout
from webappctl.locking import LockManager
from webappctl.models import ProvisioningConfig, Runtime
from webappctl.runner import CommandRunner, redact
from webappctl.workflow import ProvisioningWorkflow


@dataclass
class Call:
    """One command issued through :class:`FakeRunner`."""

    args: list[str]
    user: str | None = None
    cwd: Path | None = None
    env: dict[str, str] | None = None
    preserve_env: list[str] = field(default_factory=list)

    @property
    def line(self) -> str:
        """Return the command joined with spaces."""
        return " ".join(self.args)


@dataclass
class _Failure:
    returncode: int = 1
    stderr: str = "boom"
    timeout: bool = False
    at_end: bool = False

    def matches(self, fragment: str, line: str) -> bool:
        return line.endswith(fragment) if self.at_end else fragment in line


@dataclass
class FakeHost:
    """Mutable model of the host the commands act on."""

    root: Path
    users: dict[str, SimpleNamespace] = field(default_factory=dict)
    listening: set[int] = field(default_factory=set)
    ports_on_start: dict[str, int] = field(default_factory=dict)
    active_units: set[str] = field(default_factory=set)
    enabled_units: set[str] = field(default_factory=set)
    repo_files: dict[str, str] = field(default_factory=lambda: {"package.json": "{}\n"})
    node_version: str = "v20.11.1"
    audit_totals: list[int] = field(default_factory=list)
    upgradable: int = 0
    nginx_active: bool = True
    reloads: int = 0
    ps_output: str = ""
    failures: dict[str, _Failure] = field(default_factory=dict)
    next_uid: int = 2000

    # passwd / group -----------------------------------------------------
    def add_user(self, name: str, home: Path, *, group: str | None = None) -> None:
        """Register an OS user whose primary group is *group* (default: *name*)."""
        self.users[name] = SimpleNamespace(
            pw_name=name,
            pw_uid=self.next_uid,
            pw_gid=self.next_uid,
            pw_dir=str(home),
            gr_name=group or name,
        )
        self.next_uid += 1

    def getpwnam(self, name: str) -> SimpleNamespace:
        try:
            return self.users[name]
        except KeyError:
            raise KeyError(f"getpwnam(): name not found: '{name}'") from None

    def getgrnam(self, name: str) -> SimpleNamespace:
        for entry in self.users.values():
            if entry.gr_name == name:
                return SimpleNamespace(gr_name=name, gr_gid=entry.pw_gid, gr_mem=[])
        raise KeyError(f"getgrnam(): name not found: '{name}'")

    def getgrgid(self, gid: int) -> SimpleNamespace:
        for entry in self.users.values():
            if entry.pw_gid == gid:
                return SimpleNamespace(gr_name=entry.gr_name, gr_gid=gid, gr_mem=[])
        raise KeyError(f"getgrgid(): gid not found: {gid}")

    # failure injection --------------------------------------------------
    def fail(
        self,
        fragment: str,
        *,
        returncode: int = 1,
        stderr: str = "boom",
        timeout: bool = False,
        at_end: bool = False,
    ) -> None:
        """Make every command whose joined text contains *fragment* fail.

        With *at_end* the text must end with *fragment* instead.
        """
        self.failures[fragment] = _Failure(
            returncode=returncode, stderr=stderr, timeout=timeout, at_end=at_end
        )

    # dispatch -----------------------------------------------------------
    def handle(self, call: Call) -> tuple[int, str, str]:
        """Apply *call* to the model and return ``(returncode, stdout, stderr)``."""
        for fragment, failure in self.failures.items():
            if failure.matches(fragment, call.line):
                if failure.timeout:
                    raise ExternalCommandTimeout(call.args, 1.0)
                return failure.returncode, "", failure.stderr

        program = Path(call.args[0]).name
        handler: Callable[[Call], tuple[int, str, str]] | None = getattr(
            self, f"_cmd_{program.replace('-', '_')}", None
        )
        if handler is None:
            return 0, "", ""
        return handler(call)

    def _cmd_adduser(self, call: Call) -> tuple[int, str, str]:
        name = call.args[-1]
        home = Path(call.args[call.args.index("--home") + 1])
        self.add_user(name, home)
        home.mkdir(parents=True, exist_ok=True)
        return 0, "", ""

    def _cmd_userdel(self, call: Call) -> tuple[int, str, str]:
        name = call.args[-1]
        entry = self.users.pop(name, None)
        if entry is None:
            return 6, "", f"userdel: user '{name}' does not exist"
        if "-r" in call.args:
            shutil.rmtree(entry.pw_dir, ignore_errors=True)
        return 0, "", ""

    def _cmd_git(self, call: Call) -> tuple[int, str, str]:
        if "clone" in call.args:
            dest = Path(call.args[-1])
            dest.mkdir(parents=True, exist_ok=True)
            (dest / ".git").mkdir(exist_ok=True)
            for name, content in self.repo_files.items():
                (dest / name).write_text(content, encoding="utf-8")
        return 0, "", ""

    def _cmd_bash(self, call: Call) -> tuple[int, str, str]:
        script = call.args[-1]
        cwd = call.cwd
        if " -fsSL " in script:
            nvm_dir = next(
                token.split("=", 1)[1]
                for token in shlex.split(script)
                if token.startswith("NVM_DIR=")
            )
            (Path(nvm_dir) / "nvm.sh").write_text("# nvm\n", encoding="utf-8")
            return 0, "", ""
        if script.endswith("node -v"):
            return 0, f"{self.node_version}\n", ""
        if script.endswith("npm audit --json"):
            total = self.audit_totals.pop(0) if self.audit_totals else 0
            payload = {"metadata": {"vulnerabilities": {"total": total}}}
            return (1 if total else 0), json.dumps(payload), ""
        if script.endswith("npm install") and cwd is not None:
            (cwd / "node_modules").mkdir(exist_ok=True)
        if script.endswith("npm init -y") and cwd is not None:
            (cwd / "package.json").write_text("{}\n", encoding="utf-8")
        return 0, "", ""

    def _cmd_python3(self, call: Call) -> tuple[int, str, str]:
        if call.args[1:3] == ["-m", "venv"] and call.cwd is not None:
            (call.cwd / call.args[3] / "bin").mkdir(parents=True, exist_ok=True)
        return 0, "", ""

    def _cmd_systemctl(self, call: Call) -> tuple[int, str, str]:
        action = call.args[1]
        unit = call.args[2] if len(call.args) > 2 else None
        if action == "enable" and unit:
            self.enabled_units.add(unit)
        elif action == "disable" and unit:
            self.enabled_units.discard(unit)
        elif action == "start" and unit:
            if unit == "nginx":
                self.nginx_active = True
            else:
                self.active_units.add(unit)
                if unit in self.ports_on_start:
                    self.listening.add(self.ports_on_start[unit])
        elif action == "stop" and unit:
            self.active_units.discard(unit)
            self.listening.discard(self.ports_on_start.get(unit, -1))
        elif action == "is-active" and unit:
            active = self.nginx_active if unit == "nginx" else unit in self.active_units
            return (0, "active\n", "") if active else (3, "inactive\n", "")
        return 0, "", ""

    def _cmd_nginx(self, call: Call) -> tuple[int, str, str]:
        if call.args[1:] == ["-s", "reload"]:
            self.reloads += 1
            return 0, "", ""
        return 0, "", "nginx: configuration file /etc/nginx/nginx.conf test is successful"

    def _cmd_ss(self, call: Call) -> tuple[int, str, str]:
        lines = [
            f"LISTEN 0      511      127.0.0.1:{port}      0.0.0.0:*"
            for port in sorted(self.listening)
        ]
        return 0, "\n".join(lines) + ("\n" if lines else ""), ""

    def _cmd_lsof(self, call: Call) -> tuple[int, str, str]:
        spec = next(arg for arg in call.args if arg.startswith("-iTCP:"))
        port = int(spec.split(":", 1)[1])
        if port in self.listening:
            return 0, "4242\n", ""
        return 1, "", ""

    def _cmd_apt_get(self, call: Call) -> tuple[int, str, str]:
        if "-s" in call.args:
            summary = (
                f"{self.upgradable} upgraded, 0 newly installed, 0 to remove and "
                "0 not upgraded.\n"
            )
            return 0, summary, ""
        return 0, "", ""

    def _cmd_ps(self, call: Call) -> tuple[int, str, str]:
        return 0, self.ps_output, ""


class FakeRunner(CommandRunner):
    """:class:`CommandRunner` that records calls and answers from a :class:`FakeHost`."""

    def __init__(self, host: FakeHost, **kwargs: object) -> None:
        """Bind the runner to *host*."""
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.host = host
        self.calls: list[Call] = []

    def run(
        self,
        args: Sequence[str],
        *,
        user: str | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        preserve_env: Sequence[str] = (),
        input_text: str | None = None,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [str(arg) for arg in args]
        call = Call(command, user, cwd, dict(env) if env is not None else None, list(preserve_env))
        self.calls.append(call)
        returncode, stdout, stderr = self.host.handle(call)
        if check and returncode != 0:
            shown = [redact(part, self.secrets) for part in command]
            output = redact(stderr.strip() or stdout.strip(), self.secrets)
            raise ExternalCommandError(shown, returncode, output)
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    def lines(self) -> list[str]:
        """Return every recorded command as a string."""
        return [call.line for call in self.calls]

    def find(self, fragment: str) -> list[Call]:
        """Return the calls whose joined text contains *fragment*."""
        return [call for call in self.calls if fragment in call.line]


def seed_nvm(nvm_dir: Path) -> None:
    """Lay down the ``nvm.sh`` marker of a completed nvm install."""
    nvm_dir.mkdir(parents=True, exist_ok=True)
    (nvm_dir / "nvm.sh").write_text("# nvm\n", encoding="utf-8")


def config_overrides(root: Path) -> dict[str, object]:
    """Return config overrides that keep every host path under *root*."""
    return {
        "www_root": str(root / "www"),
        "state_dir": str(root / "state"),
        "logs_dir": str(root / "logs"),
        "runtime_dir": str(root / "run"),
        "templates_dir": str(root / "templates"),
        "environment_dir": str(root / "environment.d"),
        "app_log_dir": str(root / "applogs"),
        "lock_timeout": 1.0,
        "systemd": {"unit_dir": str(root / "systemd")},
        "nginx": {
            "sites_available": str(root / "nginx" / "sites-available"),
            "sites_enabled": str(root / "nginx" / "sites-enabled"),
        },
        "node": {"nvm_dir": str(root / "nvm")},
        "verify": {"retries": 3, "delay": 0},
    }


@pytest.fixture
def host(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeHost:
    """Return a fake host whose users back ``pwd``/``grp`` lookups."""
    fake = FakeHost(root=tmp_path)
    monkeypatch.setattr(pwd, "getpwnam", fake.getpwnam)
    monkeypatch.setattr(grp, "getgrnam", fake.getgrnam)
    monkeypatch.setattr(grp, "getgrgid", fake.getgrgid)
    return fake


@pytest.fixture
def fake_runner(host: FakeHost) -> FakeRunner:
    """Return a runner bound to the fake host."""
    return FakeRunner(host)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return tool settings rooted in ``tmp_path``."""
    return load_config(
        config_file=tmp_path / "config.yml",
        env={},
        overrides=config_overrides(tmp_path),
    )


@pytest.fixture
def make_config(app_config: AppConfig) -> Callable[..., ProvisioningConfig]:
    """Return a factory for provisioning configs under the test www root."""

    def _make(**overrides: object) -> ProvisioningConfig:
        code_name = str(overrides.pop("code_name", "demo"))
        values: dict[str, object] = {
            "runtime": Runtime.NODE,
            "display_name": "Demo App",
            "code_name": code_name,
            "repo_url": "https://github.com/example/demo.git",
            "domain": "demo.example.com",
            "port": 3000,
            "app_dir": app_config.www_root / code_name,
            "workers": 3,
            "nvm_dir": app_config.node.nvm_dir,
        }
        values.update(overrides)
        return ProvisioningConfig(**values)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def workflow(app_config: AppConfig, fake_runner: FakeRunner) -> ProvisioningWorkflow:
    """Return a workflow wired to the fake host with instant polling."""
    return ProvisioningWorkflow(
        app_config=app_config,
        runner=fake_runner,
        locks=LockManager(app_config.runtime_dir, default_timeout=1.0),
        sleep=lambda seconds: None,
        which=lambda name: f"/usr/sbin/{name}",
    )
