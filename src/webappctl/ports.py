"""Listening-socket detection for the application port.

The port is checked by asking the OS which TCP sockets are in ``LISTEN``
state, never by binding to it: a test bind can succeed on a port that another
process holds with ``SO_REUSEPORT`` and would briefly steal it from a live
service.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import ExternalCommandError, PortInUseError
from .runner import CommandRunner

LOGGER = logging.getLogger(__name__)


def parse_listening_ports(output: str) -> set[int]:
    """Return the local ports found in ``ss -ltnH`` output."""
    ports: set[int] = set()
    for line in output.splitlines():
        fields = line.split()
        # State Recv-Q Send-Q Local:Port Peer:Port [Process]
        if len(fields) < 4:
            continue
        local = fields[3]
        _, sep, port_text = local.rpartition(":")
        if not sep or not port_text.isdigit():
            continue
        ports.add(int(port_text))
    return ports


@dataclass(slots=True)
class PortProbe:
    """Query listening TCP ports via ``ss`` (falling back to ``lsof``)."""

    runner: CommandRunner
    ss_bin: str = "ss"
    lsof_bin: str = "lsof"

    def listening_ports(self) -> set[int] | None:
        """Return all listening TCP ports, or ``None`` when ``ss`` is unavailable."""
        try:
            result = self.runner.run([self.ss_bin, "-ltnH"], check=False, timeout=30)
        except ExternalCommandError as exc:
            LOGGER.debug("ss unavailable: %s", exc)
            return None
        if result.returncode != 0:
            return None
        return parse_listening_ports(result.stdout or "")

    def owners(self, port: int) -> list[str]:
        """Return the PIDs ``lsof`` reports as listening on *port*."""
        args = [self.lsof_bin, "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"]
        try:
            result = self.runner.run(args, check=False, timeout=30)
        except ExternalCommandError as exc:
            LOGGER.debug("lsof unavailable: %s", exc)
            return []
        # lsof exits 1 when nothing matches.
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def is_listening(self, port: int) -> bool:
        """Return ``True`` when some process listens on *port*."""
        ports = self.listening_ports()
        if ports is not None:
            return port in ports
        return bool(self.owners(port))

    def ensure_free(self, port: int) -> None:
        """Raise :class:`PortInUseError` when *port* is already taken."""
        if not self.is_listening(port):
            return
        owners = self.owners(port)
        raise PortInUseError(port, [f"pid {pid}" for pid in owners])


__all__ = ["PortProbe", "parse_listening_ports"]
