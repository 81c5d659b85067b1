"""Tests for account planning and the resource provisioner."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from webappctl.accounts import AppAccountSpec, plan_account
from webappctl.errors import CloneError, ExternalCommandTimeout, UserExistsConflict
from webappctl.models import (
    ProvisioningConfig,
    RepoCredentials,
    ResourceKind,
    ResourceLog,
    Runtime,
)
from webappctl.node_runtime import NvmRuntime
from webappctl.provisioner import CREDENTIAL_HELPER, ResourceProvisioner, credential_env
from webappctl.python_runtime import VenvRuntime

from conftest import FakeHost, FakeRunner

REPO = "https://github.com/example/demo.git"


def _provisioner(runner: FakeRunner, tmp_path: Path) -> ResourceProvisioner:
    return ResourceProvisioner(
        runner=runner,
        log=ResourceLog(),
        node=NvmRuntime(runner=runner, nvm_dir=tmp_path / "nvm"),
        python=VenvRuntime(runner=runner),
    )


def _kinds(log: ResourceLog) -> list[ResourceKind]:
    return [entry.kind for entry in log.entries]


def test_plan_creates_missing_user(host: FakeHost, tmp_path: Path) -> None:
    """A missing user is created as a system user with its own group."""
    plan = plan_account(AppAccountSpec(name="demo", home=tmp_path / "demo"))

    assert plan.action == "create"
    assert plan.command == [
        "adduser",
        "--system",
        "--group",
        "--home",
        str(tmp_path / "demo"),
        "demo",
    ]
    assert plan.status.user_exists is False


def test_plan_reuses_matching_user_and_warns_on_group(host: FakeHost, tmp_path: Path) -> None:
    """An existing user with the same home is reused; a foreign group is only a warning."""
    host.add_user("demo", tmp_path / "demo", group="staff")

    plan = plan_account(AppAccountSpec(name="demo", home=tmp_path / "demo"))

    assert plan.action == "reuse"
    assert plan.command is None
    assert plan.warnings == ["User 'demo' primary group is 'staff', expected 'demo'."]


def test_plan_conflicts_on_different_home(host: FakeHost, tmp_path: Path) -> None:
    """A same-named user living elsewhere is a conflict."""
    host.add_user("demo", Path("/home/demo"))

    plan = plan_account(AppAccountSpec(name="demo", home=tmp_path / "demo"))

    assert plan.action == "conflict"
    assert "already exists with home '/home/demo'" in plan.conflicts[0]


def test_create_app_user_records_user_and_home(
    host: FakeHost, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """Creating the user records both the account and the home it brought."""
    provisioner = _provisioner(fake_runner, tmp_path)
    home = tmp_path / "www" / "demo"

    assert provisioner.create_app_user("demo", home) is True

    assert home.is_dir()
    assert _kinds(provisioner.log) == [
        ResourceKind.USER_CREATED,
        ResourceKind.DIRECTORY_CREATED,
    ]
    assert fake_runner.lines()[-1] == f"chown demo:demo {home}"


def test_create_app_user_reuses_compatible_user(
    host: FakeHost, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """A compatible user is reused without a teardown entry for the account."""
    home = tmp_path / "www" / "demo"
    host.add_user("demo", home)
    provisioner = _provisioner(fake_runner, tmp_path)

    assert provisioner.create_app_user("demo", home) is False

    assert _kinds(provisioner.log) == [ResourceKind.DIRECTORY_CREATED]
    assert fake_runner.find("adduser") == []


def test_create_app_user_conflict_creates_nothing(
    host: FakeHost, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """A conflicting user aborts before any mutation."""
    host.add_user("demo", Path("/home/demo"))
    provisioner = _provisioner(fake_runner, tmp_path)

    with pytest.raises(UserExistsConflict):
        provisioner.create_app_user("demo", tmp_path / "www" / "demo")

    assert not provisioner.log
    assert fake_runner.calls == []


def test_clone_private_repository_keeps_token_out_of_argv_and_config(
    host: FakeHost, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """The token reaches git through the environment and is redacted everywhere else."""
    provisioner = _provisioner(fake_runner, tmp_path)
    dest = tmp_path / "www" / "demo"

    provisioner.clone_repository(REPO, RepoCredentials("octo", "ghp_secret"), dest, "demo")

    (clone,) = fake_runner.calls
    assert clone.user == "demo"
    assert clone.args == ["git", "clone", REPO, str(dest)]
    assert clone.env is not None
    assert clone.env["WEBAPPCTL_GIT_TOKEN"] == "ghp_secret"
    assert clone.env["WEBAPPCTL_GIT_USERNAME"] == "octo"
    assert clone.env["GIT_CONFIG_KEY_0"] == "credential.helper"
    assert clone.env["GIT_CONFIG_VALUE_0"] == CREDENTIAL_HELPER
    assert "ghp_secret" not in CREDENTIAL_HELPER
    assert clone.preserve_env == sorted(credential_env(RepoCredentials("octo", "x")))
    assert "ghp_secret" in fake_runner.secrets
    assert provisioner.log.contains(ResourceKind.REPOSITORY_CLONED, str(dest))


def test_clone_public_repository_passes_no_environment(
    host: FakeHost, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    provisioner = _provisioner(fake_runner, tmp_path)

    provisioner.clone_repository(REPO, None, tmp_path / "demo", "demo")

    (clone,) = fake_runner.calls
    assert clone.env is None
    assert clone.preserve_env == []
    assert fake_runner.secrets == []


def test_clone_failure_is_redacted_clone_error(
    host: FakeHost, fake_runner: FakeRunner, tmp_path: Path
) -> None:
    """A failed clone raises CloneError naming the public URL only."""
    host.fail("git clone", returncode=128, stderr="fatal: Authentication failed for ghp_secret")
    provisioner = _provisioner(fake_runner, tmp_path)

    with pytest.raises(CloneError) as excinfo:
        provisioner.clone_repository(
            REPO, RepoCredentials("octo", "ghp_secret"), tmp_path / "demo", "demo"
        )

    message = str(excinfo.value)
    assert message.startswith(f"Failed to clone {REPO}")
    assert "ghp_secret" not in message
    assert "ghp_secret" not in " ".join(excinfo.value.command)
    assert not provisioner.log


def test_clone_timeout_propagates(host: FakeHost, fake_runner: FakeRunner, tmp_path: Path) -> None:
    """Timeouts are not re-labelled as clone failures."""
    host.fail("git clone", timeout=True)
    provisioner = _provisioner(fake_runner, tmp_path)

    with pytest.raises(ExternalCommandTimeout):
        provisioner.clone_repository(REPO, None, tmp_path / "demo", "demo")


@pytest.mark.parametrize(
    ("runtime", "repo_files", "expected_target"),
    [
        (Runtime.NODE, {"package.json": "{}\n"}, "node_modules"),
        (Runtime.FASTAPI, {"requirements.txt": "fastapi\n"}, "venv"),
    ],
)
def test_provision_records_every_step_in_order(
    host: FakeHost,
    fake_runner: FakeRunner,
    make_config: Callable[..., ProvisioningConfig],
    runtime: Runtime,
    repo_files: dict[str, str],
    expected_target: str,
    tmp_path: Path,
) -> None:
    """User, home, checkout and dependencies are recorded before ownership is fixed."""
    host.repo_files = repo_files
    config = make_config(runtime=runtime)
    provisioner = _provisioner(fake_runner, tmp_path)

    provisioner.provision(config)

    assert [(entry.kind, entry.identifier) for entry in provisioner.log.entries] == [
        (ResourceKind.USER_CREATED, "demo"),
        (ResourceKind.DIRECTORY_CREATED, str(config.app_dir)),
        (ResourceKind.REPOSITORY_CLONED, str(config.app_dir)),
        (ResourceKind.DEPENDENCIES_INSTALLED, str(config.app_dir / expected_target)),
    ]
    assert fake_runner.lines()[-1] == f"chown -R demo:demo {config.app_dir}"
