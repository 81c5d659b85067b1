"""Process priority reporting for the ``nice-report`` command."""
from __future__ import annotations

from dataclasses import dataclass

from .runner import CommandRunner


@dataclass(frozen=True, slots=True)
class NiceEntry:
    """One distinct (nice, command, user) triple from ``ps``."""

    nice: int
    command: str
    user: str


def parse_ps_output(output: str) -> list[NiceEntry]:
    """Parse ``ps -eo nice,comm,user`` output, dropping root and kernel threads."""
    entries: set[NiceEntry] = set()
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 3:
            continue
        nice_text, user = fields[0], fields[-1]
        command = " ".join(fields[1:-1])
        # Realtime and kernel threads report "-" instead of a number.
        try:
            nice = int(nice_text)
        except ValueError:
            continue
        if user == "root":
            continue
        entries.add(NiceEntry(nice=nice, command=command, user=user))
    return sorted(entries, key=lambda entry: (entry.nice, entry.user, entry.command))


def collect_nice_values(runner: CommandRunner) -> list[NiceEntry]:
    """Return the nice values of every non-root process."""
    result = runner.run(["ps", "-eo", "nice,comm,user", "--no-headers"], timeout=30)
    return parse_ps_output(result.stdout or "")


__all__ = ["NiceEntry", "collect_nice_values", "parse_ps_output"]
