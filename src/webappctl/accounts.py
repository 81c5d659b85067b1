"""Inspect and plan the dedicated OS account each application runs as."""
from __future__ import annotations

import grp
import pwd
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal


@dataclass(slots=True)
class AppAccountSpec:
    """Desired attributes for an application's system account."""

    name: str
    home: Path
    group: str | None = None

    def __post_init__(self) -> None:
        """Default the group to the user name (``adduser --group``)."""
        if self.group is None:
            self.group = self.name


@dataclass(slots=True)
class AppAccountStatus:
    """Current state of the account on the host."""

    user_exists: bool
    group_exists: bool
    uid: int | None = None
    gid: int | None = None
    home: Path | None = None
    primary_group: str | None = None


@dataclass(slots=True)
class AppAccountPlan:
    """What must happen for the host to satisfy an :class:`AppAccountSpec`."""

    spec: AppAccountSpec
    status: AppAccountStatus
    action: Literal["create", "reuse", "conflict"]
    command: list[str] | None = None
    conflicts: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def inspect_account(spec: AppAccountSpec) -> AppAccountStatus:
    """Return the current status for *spec* from the passwd/group databases."""
    try:
        pw_entry = pwd.getpwnam(spec.name)
    except KeyError:
        user_exists = False
        uid = gid = None
        home = None
        primary_group = None
    else:
        user_exists = True
        uid = pw_entry.pw_uid
        gid = pw_entry.pw_gid
        home = Path(pw_entry.pw_dir)
        try:
            primary_group = grp.getgrgid(gid).gr_name
        except KeyError:
            primary_group = None

    group_exists = False
    if spec.group:
        try:
            grp.getgrnam(spec.group)
        except KeyError:
            pass
        else:
            group_exists = True

    return AppAccountStatus(
        user_exists=user_exists,
        group_exists=group_exists,
        uid=uid,
        gid=gid,
        home=home,
        primary_group=primary_group,
    )


def plan_account(spec: AppAccountSpec) -> AppAccountPlan:
    """Return a plan describing how to satisfy *spec* on the current host.

    An existing user is reusable only when its home directory matches the
    requested application directory; anything else would make the app run
    from, and teardown delete, the wrong tree.
    """
    status = inspect_account(spec)

    if not status.user_exists:
        command = ["adduser", "--system", "--group", "--home", str(spec.home), spec.name]
        return AppAccountPlan(spec=spec, status=status, action="create", command=command)

    plan = AppAccountPlan(spec=spec, status=status, action="reuse")
    if status.home is not None and status.home != spec.home:
        plan.conflicts.append(
            f"User '{spec.name}' already exists with home '{status.home}', "
            f"expected '{spec.home}'."
        )
    if spec.group and status.primary_group and status.primary_group != spec.group:
        plan.warnings.append(
            f"User '{spec.name}' primary group is '{status.primary_group}', "
            f"expected '{spec.group}'."
        )
    if plan.conflicts:
        plan.action = "conflict"
    return plan


__all__ = [
    "AppAccountPlan",
    "AppAccountSpec",
    "AppAccountStatus",
    "inspect_account",
    "plan_account",
]
