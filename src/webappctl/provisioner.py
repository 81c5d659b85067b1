"""Create the OS user, checkout and dependency tree for an application.

Every successful host mutation is appended to the :class:`ResourceLog`
before the next one starts, so a failure at any point leaves an exact list
of what teardown has to undo.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .accounts import AppAccountSpec, plan_account
from .errors import CloneError, ExternalCommandError, ExternalCommandTimeout, UserExistsConflict
from .models import ProvisioningConfig, RepoCredentials, ResourceKind, ResourceLog, Runtime
from .node_runtime import NvmRuntime
from .python_runtime import VenvRuntime
from .runner import CommandRunner

LOGGER = logging.getLogger(__name__)


# Answers git credential requests from the environment so the token never
# appears in argv or in .git/config.
CREDENTIAL_HELPER = (
    "!f() { test \"$1\" = get || exit 0; "
    "echo \"username=$WEBAPPCTL_GIT_USERNAME\"; echo \"password=$WEBAPPCTL_GIT_TOKEN\"; }; f"
)


def credential_env(credentials: RepoCredentials) -> dict[str, str]:
    """Return the variables that hand *credentials* to git through :data:`CREDENTIAL_HELPER`."""
    return {
        "GIT_CONFIG_COUNT": "1",
        "GIT_CONFIG_KEY_0": "credential.helper",
        "GIT_CONFIG_VALUE_0": CREDENTIAL_HELPER,
        "GIT_TERMINAL_PROMPT": "0",
        "WEBAPPCTL_GIT_USERNAME": credentials.username,
        "WEBAPPCTL_GIT_TOKEN": credentials.token,
    }


@dataclass(slots=True)
class ResourceProvisioner:
    """Apply the provisioning steps that precede unit rendering."""

    runner: CommandRunner
    log: ResourceLog
    node: NvmRuntime
    python: VenvRuntime
    git_bin: str = "git"

    def create_app_user(self, code_name: str, home: Path) -> bool:
        """Create the system user *code_name* with home *home*.

        Returns ``True`` when a user was created and ``False`` when a
        compatible user already existed and is reused.
        """
        plan = plan_account(AppAccountSpec(name=code_name, home=home))
        if plan.action == "conflict":
            raise UserExistsConflict(" ".join(plan.conflicts))
        for warning in plan.warnings:
            LOGGER.warning(warning)

        if plan.action == "reuse":
            LOGGER.info("User %s already exists with home %s; reusing it", code_name, home)
            if not home.exists():
                home.mkdir(parents=True)
                self.log.record(ResourceKind.DIRECTORY_CREATED, home)
                self._chown(code_name, home)
            return False

        assert plan.command is not None
        home_existed = home.exists()
        self.runner.run(plan.command)
        self.log.record(ResourceKind.USER_CREATED, code_name)
        if not home_existed and home.exists():
            self.log.record(ResourceKind.DIRECTORY_CREATED, home)
        self._chown(code_name, home)
        return True

    def clone_repository(
        self,
        url: str,
        credentials: RepoCredentials | None,
        dest: Path,
        user: str,
    ) -> None:
        """Clone *url* into *dest* as *user*, keeping credentials off disk."""
        env = None
        extra: dict[str, str] = {}
        if credentials is not None:
            self.runner.add_secret(credentials.token)
            extra = credential_env(credentials)
            env = {**os.environ, **extra}

        try:
            self.runner.run(
                [self.git_bin, "clone", url, str(dest)],
                user=user,
                env=env,
                preserve_env=sorted(extra),
            )
        except ExternalCommandTimeout:
            raise
        except ExternalCommandError as exc:
            raise CloneError(
                exc.command,
                exc.returncode,
                exc.output,
                message=f"Failed to clone {url}: {exc.output or exc}",
            ) from None
        self.log.record(ResourceKind.REPOSITORY_CLONED, dest)

    def install_dependencies(self, config: ProvisioningConfig) -> Path:
        """Install the runtime toolchain and project dependencies as the app user."""
        user = config.code_name
        if config.runtime is Runtime.NODE:
            info = self.node.setup_project(config.app_dir, user)
            LOGGER.info("Installed Node.js %s for %s", info.raw, config.code_name)
            target = config.app_dir / "node_modules"
        else:
            target = self.python.setup_project(config.app_dir, user)
        self.log.record(ResourceKind.DEPENDENCIES_INSTALLED, target)
        return target

    def set_ownership(self, config: ProvisioningConfig) -> None:
        """Hand the whole application tree to the app user."""
        user = config.code_name
        self.runner.run(["chown", "-R", f"{user}:{user}", str(config.app_dir)])

    def provision(self, config: ProvisioningConfig) -> None:
        """Run user creation, clone, dependency install and chown in order."""
        self.create_app_user(config.code_name, config.app_dir)
        self.clone_repository(
            config.repo_url, config.credentials, config.app_dir, config.code_name
        )
        self.install_dependencies(config)
        self.set_ownership(config)

    def _chown(self, user: str, path: Path) -> None:
        self.runner.run(["chown", f"{user}:{user}", str(path)])


__all__ = ["CREDENTIAL_HELPER", "ResourceProvisioner", "credential_env"]
