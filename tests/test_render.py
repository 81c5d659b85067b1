"""Tests for systemd unit and nginx site rendering."""
from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from webappctl.errors import RenderError
from webappctl.models import ProvisioningConfig, Runtime
from webappctl.render import render_reverse_proxy_site, render_service_unit, site_context


def _config(**overrides: object) -> ProvisioningConfig:
    values: dict[str, object] = {
        "runtime": Runtime.NODE,
        "display_name": "Demo App",
        "code_name": "demo",
        "repo_url": "https://github.com/example/demo.git",
        "domain": "demo.example.com",
        "port": 3000,
        "app_dir": Path("/var/www/demo"),
        "workers": 4,
        "nice": 5,
        "cpu_quota": "75%",
        "memory_max": "512M",
    }
    values.update(overrides)
    return ProvisioningConfig(**values)  # type: ignore[arg-type]


def test_node_unit() -> None:
    unit = render_service_unit(_config())

    assert "Description=Demo App API Powered by Node.js\n" in unit
    assert "Documentation=https://github.com/example/demo.git\n" in unit
    assert "User=demo\nGroup=demo\n" in unit
    assert 'Environment="PORT=3000"\n' in unit
    assert 'Environment="HOST=127.0.0.1"\n' in unit
    assert 'Environment="NVM_DIR=/usr/local/nvm"\n' in unit
    assert "WorkingDirectory=/var/www/demo\n" in unit
    assert "exec npm run start'" in unit
    assert "RestartSec=15\n" in unit
    assert "Nice=5\nCPUQuota=75%\nMemoryMax=512M\n" in unit
    assert "NoNewPrivileges=true\n" in unit
    assert unit.rstrip().endswith("WantedBy=multi-user.target")


def test_fastapi_unit_runs_uvicorn_from_the_venv() -> None:
    unit = render_service_unit(
        _config(runtime=Runtime.FASTAPI, asgi_app="app.main:api", concurrency_limit=500)
    )

    assert "Description=Demo App API Powered by FastAPI\n" in unit
    assert 'Environment="PATH=/var/www/demo/venv/bin:' in unit
    assert "ExecStart=/var/www/demo/venv/bin/uvicorn \\\n" in unit
    assert "--port 3000 \\\n" in unit
    assert "--workers 4 \\\n" in unit
    assert "--limit-concurrency 500 \\\n" in unit
    assert "--backlog 2048 \\\n" in unit
    assert "    app.main:api\n" in unit
    assert "NVM_DIR" not in unit


def test_site_proxies_loopback_and_denies_sensitive_files() -> None:
    site = render_reverse_proxy_site(_config(gzip_comp_level=4, keepalive_timeout=30))

    assert "server_name demo.example.com;\n" in site
    assert "keepalive_timeout 30;\n" in site
    assert "gzip_comp_level 4;\n" in site
    assert site.count("proxy_pass http://127.0.0.1:3000;") == 4
    assert r"package-lock\.json" in site
    assert r"\.env|\.git|" in site
    assert "image/svg+xml;\n" in site
    assert "woff2|ttf|eot)$" in site


def test_site_context_escapes_denied_file_dots() -> None:
    context = site_context(_config())

    assert r"requirements\.txt" in context["denied_files"]  # type: ignore[operator]
    assert context["upstream"] == "127.0.0.1:3000"


def test_rendering_is_deterministic() -> None:
    config = _config(runtime=Runtime.FASTAPI)

    assert render_service_unit(config) == render_service_unit(replace(config))
    assert render_reverse_proxy_site(config) == render_reverse_proxy_site(config)


@pytest.mark.parametrize(
    "overrides",
    [
        {"display_name": 'Demo"\nExecStartPre=/bin/sh'},
        {"display_name": "\nOnFailure=evil.service"},
        {"memory_max": " 1G"},
        {"code_name": "demo\n"},
        {"cpu_quota": "50%; rm"},
        {"memory_max": "1G\n[Service]"},
        {"asgi_app": "main:app --reload"},
        {"app_dir": Path("/var/www/demo app")},
        {"repo_url": "http://github.com/example/demo.git"},
    ],
)
def test_unsafe_service_values_are_refused(overrides: dict[str, object]) -> None:
    with pytest.raises(RenderError, match="Refusing to render"):
        render_service_unit(_config(**overrides))


@pytest.mark.parametrize(
    "overrides",
    [
        {"domain": "demo.example.com; return 301"},
        {"domain": "\ndemo.example.com"},
        {"gzip_comp_level": 12},
        {"port": 80},
    ],
)
def test_unsafe_site_values_are_refused(overrides: dict[str, object]) -> None:
    with pytest.raises(RenderError):
        render_reverse_proxy_site(_config(**overrides))


def test_rendered_values_are_the_normalised_ones() -> None:
    """The unit carries what the validators return, not the raw config fields."""
    unit = render_service_unit(_config(memory_max="1.5g"))
    site = render_reverse_proxy_site(_config(domain="Demo.Example.COM."))

    assert "MemoryMax=1.5G\n" in unit
    assert "MemoryMax=1.5g" not in unit
    assert "server_name demo.example.com;\n" in site
