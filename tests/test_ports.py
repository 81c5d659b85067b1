"""Tests for listening-port detection."""
from __future__ import annotations

import pytest

from webappctl.errors import PortInUseError, PreflightError
from webappctl.ports import PortProbe, parse_listening_ports

from conftest import FakeHost, FakeRunner

SS_OUTPUT = """\
LISTEN 0      511          0.0.0.0:80         0.0.0.0:*
LISTEN 0      4096   127.0.0.53%lo:53         0.0.0.0:*
LISTEN 0      511             [::]:443           [::]:*
LISTEN 0      128        127.0.0.1:3000       0.0.0.0:*    users:(("node",pid=77,fd=20))
garbage
"""


def test_parse_listening_ports_handles_ipv4_ipv6_and_scopes() -> None:
    """Ports are read from the local address column of ``ss -ltnH``."""
    assert parse_listening_ports(SS_OUTPUT) == {80, 53, 443, 3000}


def test_probe_reports_listening_ports(host: FakeHost, fake_runner: FakeRunner) -> None:
    """The probe consults ``ss`` and finds a busy port."""
    host.listening.add(3000)
    probe = PortProbe(runner=fake_runner)

    assert probe.is_listening(3000) is True
    assert probe.is_listening(3001) is False
    assert fake_runner.lines()[0] == "ss -ltnH"


def test_probe_falls_back_to_lsof_when_ss_fails(host: FakeHost, fake_runner: FakeRunner) -> None:
    """Without a working ``ss`` the probe asks ``lsof`` for owners."""
    host.fail("ss -ltnH", returncode=127)
    host.listening.add(8000)
    probe = PortProbe(runner=fake_runner)

    assert probe.listening_ports() is None
    assert probe.is_listening(8000) is True
    assert probe.is_listening(8001) is False


def test_ensure_free_names_the_owner(host: FakeHost, fake_runner: FakeRunner) -> None:
    """A taken port raises PortInUseError listing the owning PID."""
    host.listening.add(3000)
    probe = PortProbe(runner=fake_runner)

    with pytest.raises(PortInUseError) as excinfo:
        probe.ensure_free(3000)

    assert isinstance(excinfo.value, PreflightError)
    assert excinfo.value.port == 3000
    assert "pid 4242" in str(excinfo.value)
    probe.ensure_free(3001)
