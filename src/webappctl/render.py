"""Render the systemd unit and nginx site for a :class:`ProvisioningConfig`.

Both functions are pure: identical configs yield byte-identical text and
nothing touches the host. Every value that is interpolated into unit or site
syntax is re-validated here, because a config may be built programmatically
without going through the input collector.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import TypeVar

from .errors import RenderError, ValidationError
from .models import ProvisioningConfig, Runtime
from .templates import TemplateEngine
from .validators import (
    validate_asgi_app,
    validate_code_name,
    validate_display_name,
    validate_domain,
    validate_gzip_level,
    validate_integer,
    validate_memory_size,
    validate_nice_value,
    validate_percentage,
    validate_port,
    validate_positive_integer,
    validate_repo_url,
)

SERVICE_TEMPLATES: Mapping[Runtime, str] = {
    Runtime.NODE: "systemd/node.service.j2",
    Runtime.FASTAPI: "systemd/fastapi.service.j2",
}
SITE_TEMPLATE = "nginx/site.conf.j2"

RESTART_SEC = 15
TIMEOUT_STOP_SEC = 20
BIND_HOST = "127.0.0.1"

DENIED_FILES = (
    ".env",
    ".git",
    "package.json",
    "package-lock.json",
    "yarn.lock",
    "requirements.txt",
)
STATIC_EXTENSIONS = (
    "jpg",
    "jpeg",
    "png",
    "gif",
    "ico",
    "css",
    "js",
    "svg",
    "woff",
    "woff2",
    "ttf",
    "eot",
)
GZIP_TYPES = (
    "text/plain",
    "text/css",
    "text/javascript",
    "text/xml",
    "text/yaml",
    "application/javascript",
    "application/x-javascript",
    "application/json",
    "application/xml",
    "application/x-yaml",
    "application/yaml",
    "application/rss+xml",
    "application/atom+xml",
    "image/svg+xml",
)

_SAFE_PATH = re.compile(r"/[A-Za-z0-9._/-]*")

T = TypeVar("T")


def _check(label: str, validator: Callable[[str], T], value: object) -> T:
    text = str(value)
    if text != text.strip():
        raise RenderError(f"Refusing to render {label}: surrounding whitespace in {text!r}.")
    try:
        return validator(text)
    except ValidationError as exc:
        raise RenderError(f"Refusing to render {label}: {exc}") from exc


def _check_path(label: str, value: Path) -> str:
    text = str(value)
    if not _SAFE_PATH.fullmatch(text):
        raise RenderError(f"Refusing to render {label}: unsupported characters in {text!r}.")
    return text


def _engine(engine: TemplateEngine | None) -> TemplateEngine:
    return engine if engine is not None else TemplateEngine.with_overrides(None)


def service_context(config: ProvisioningConfig) -> dict[str, object]:
    """Return the template context for the service unit.

    The context holds the validators' normalised values, never the raw
    config fields.
    """
    working_directory = _check_path("app_dir", config.app_dir)
    return {
        "display_name": _check("display_name", validate_display_name, config.display_name),
        "code_name": _check("code_name", validate_code_name, config.code_name),
        "repo_url": _check("repo_url", validate_repo_url, config.repo_url),
        "restart_sec": RESTART_SEC,
        "host": BIND_HOST,
        "port": _check("port", validate_port, config.port),
        "nvm_dir": _check_path("nvm_dir", config.nvm_dir),
        "working_directory": working_directory,
        "venv_bin": f"{working_directory}/venv/bin",
        "workers": _check("workers", validate_positive_integer, config.workers),
        "concurrency_limit": _check(
            "concurrency_limit", validate_positive_integer, config.concurrency_limit
        ),
        "backlog_size": _check("backlog_size", validate_positive_integer, config.backlog_size),
        "asgi_app": _check("asgi_app", validate_asgi_app, config.asgi_app),
        "nice": _check("nice", validate_nice_value, config.nice),
        "cpu_quota": _check("cpu_quota", validate_percentage, config.cpu_quota),
        "memory_max": _check("memory_max", validate_memory_size, config.memory_max),
        "timeout_stop_sec": TIMEOUT_STOP_SEC,
    }


def site_context(config: ProvisioningConfig) -> dict[str, object]:
    """Return the template context for the nginx site."""
    port = _check("port", validate_port, config.port)
    return {
        "server_name": _check("domain", validate_domain, config.domain),
        "keepalive_timeout": _check(
            "keepalive_timeout", validate_integer, config.keepalive_timeout
        ),
        "denied_files": [name.replace(".", r"\.") for name in DENIED_FILES],
        "upstream": f"{BIND_HOST}:{port}",
        "gzip_comp_level": _check("gzip_comp_level", validate_gzip_level, config.gzip_comp_level),
        "gzip_types": list(GZIP_TYPES),
        "static_extensions": list(STATIC_EXTENSIONS),
    }


def render_service_unit(
    config: ProvisioningConfig, *, engine: TemplateEngine | None = None
) -> str:
    """Return the systemd unit text for *config*."""
    context = service_context(config)
    return _engine(engine).render_to_string(SERVICE_TEMPLATES[config.runtime], context)


def render_reverse_proxy_site(
    config: ProvisioningConfig, *, engine: TemplateEngine | None = None
) -> str:
    """Return the nginx server block for *config*."""
    context = site_context(config)
    return _engine(engine).render_to_string(SITE_TEMPLATE, context)


__all__ = [
    "DENIED_FILES",
    "STATIC_EXTENSIONS",
    "render_reverse_proxy_site",
    "render_service_unit",
    "service_context",
    "site_context",
]
