"""Host settings for webappctl.

The effective settings are layered, each layer overriding the one before it:
built-in defaults, then ``/etc/webappctl/config.yml`` (or the path given by
``--config-file`` or ``WEBAPPCTL_CONFIG_FILE``), then ``WEBAPPCTL_*`` environment
variables, then overrides passed in by the caller.

A double underscore in an environment variable name selects a nested key::

    export WEBAPPCTL_VERIFY__RETRIES=20
    export WEBAPPCTL_NGINX__NGINX_BIN=/usr/sbin/nginx

Environment values are read as YAML scalars, so ``20`` is an integer and
``false`` a boolean. Everything here describes the machine (paths, binaries,
timeouts, prompt defaults); per-application answers live in
:class:`webappctl.models.ProvisioningConfig`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import ConfigError

ENV_PREFIX = "WEBAPPCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration settings."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"unit_dir": str(self.unit_dir), "systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class NginxConfig:
    """Nginx integration settings."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "nginx_bin": self.nginx_bin,
        }


@dataclass(frozen=True)
class NodeConfig:
    """System-wide nvm installation settings."""

    nvm_dir: Path = Path("/usr/local/nvm")
    nvm_version: str = "v0.39.0"
    install_url: str = "https://raw.githubusercontent.com/nvm-sh/nvm/{version}/install.sh"

    def installer_url(self) -> str:
        """Return the pinned nvm installer URL."""
        return self.install_url.format(version=self.nvm_version)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "nvm_dir": str(self.nvm_dir),
            "nvm_version": self.nvm_version,
            "install_url": self.install_url,
        }


@dataclass(frozen=True)
class PythonConfig:
    """Python virtual-environment settings for FastAPI apps."""

    python_bin: str = "python3"
    venv_name: str = "venv"
    extra_packages: tuple[str, ...] = ("uvloop", "httptools")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "python_bin": self.python_bin,
            "venv_name": self.venv_name,
            "extra_packages": list(self.extra_packages),
        }


@dataclass(frozen=True)
class VerifyConfig:
    """Post-start verification polling settings."""

    retries: int = 10
    delay: float = 1.5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"retries": self.retries, "delay": self.delay}


@dataclass(frozen=True)
class ProvisioningDefaults:
    """Default answers offered by the input collector."""

    concurrency_limit: int = 1000
    backlog_size: int = 2048
    nice: int = 0
    cpu_quota: str = "50%"
    memory_max: str = "1G"
    gzip_comp_level: int = 6
    keepalive_timeout: int = 65

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "concurrency_limit": self.concurrency_limit,
            "backlog_size": self.backlog_size,
            "nice": self.nice,
            "cpu_quota": self.cpu_quota,
            "memory_max": self.memory_max,
            "gzip_comp_level": self.gzip_comp_level,
            "keepalive_timeout": self.keepalive_timeout,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for webappctl."""

    config_file: Path
    www_root: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    environment_dir: Path
    app_log_dir: Path
    lock_timeout: float
    command_timeout: float
    systemd: SystemdConfig
    nginx: NginxConfig
    node: NodeConfig
    python: PythonConfig
    verify: VerifyConfig
    defaults: ProvisioningDefaults

    @property
    def journal_dir(self) -> Path:
        """Directory holding per-application resource journals."""
        return self.state_dir / "journals"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "www_root": str(self.www_root),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "environment_dir": str(self.environment_dir),
            "app_log_dir": str(self.app_log_dir),
            "lock_timeout": self.lock_timeout,
            "command_timeout": self.command_timeout,
            "systemd": self.systemd.to_dict(),
            "nginx": self.nginx.to_dict(),
            "node": self.node.to_dict(),
            "python": self.python.to_dict(),
            "verify": self.verify.to_dict(),
            "defaults": self.defaults.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/webappctl/config.yml",
    "www_root": "/var/www",
    "state_dir": "/var/lib/webappctl",
    "logs_dir": "/var/log/webappctl",
    "runtime_dir": "/run/webappctl",
    "templates_dir": "/etc/webappctl/templates",
    "environment_dir": "/etc/environment.d",
    "app_log_dir": "/var/log",
    "lock_timeout": 30.0,
    "command_timeout": 1800.0,
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
    },
    "nginx": {
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
        "nginx_bin": "nginx",
    },
    "node": {
        "nvm_dir": "/usr/local/nvm",
        "nvm_version": "v0.39.0",
        "install_url": "https://raw.githubusercontent.com/nvm-sh/nvm/{version}/install.sh",
    },
    "python": {
        "python_bin": "python3",
        "venv_name": "venv",
        "extra_packages": ["uvloop", "httptools"],
    },
    "verify": {
        "retries": 10,
        "delay": 1.5,
    },
    "defaults": {
        "concurrency_limit": 1000,
        "backlog_size": 2048,
        "nice": 0,
        "cpu_quota": "50%",
        "memory_max": "1G",
        "gzip_comp_level": 6,
        "keepalive_timeout": 65,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Resolve every settings layer and return the resulting :class:`AppConfig`."""
    environ = dict(os.environ if env is None else env)
    settings = _deep_copy(DEFAULTS)
    path = _determine_config_path(
        _expect_str(settings["config_file"], "config_file"), config_file, environ
    )
    for layer in (_load_yaml_file(path), _build_env_overrides(environ), dict(overrides or {})):
        _deep_merge(settings, layer)
    settings["config_file"] = str(path)
    _validate_structure(settings)
    return _build_app_config(settings)


def _determine_config_path(
    default_path: str,
    explicit: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if explicit:
        return Path(explicit)
    return Path(env.get(CONFIG_ENV_VAR) or default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise ConfigError(f"{path} must hold a mapping of settings at the top level.")
    return _as_dict(document, str(path))


def _validate_structure(raw: Mapping[str, object]) -> None:
    stray = sorted(set(raw) - ALLOWED_TOP_LEVEL_KEYS)
    if stray:
        raise ConfigError(f"Unknown configuration keys: {', '.join(stray)}.")
    for section, allowed in _SECTION_KEYS.items():
        stray = sorted(set(_as_dict(raw.get(section), section)) - allowed)
        if stray:
            raise ConfigError(f"Unknown {section} configuration keys: {', '.join(stray)}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)
    command_timeout = _expect_positive_float(
        raw.get("command_timeout"), "command_timeout", default=1800.0
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
    )

    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    nginx = NginxConfig(
        sites_available=_to_path(
            nginx_mapping.get("sites_available", "/etc/nginx/sites-available")
        ),
        sites_enabled=_to_path(nginx_mapping.get("sites_enabled", "/etc/nginx/sites-enabled")),
        nginx_bin=str(nginx_mapping.get("nginx_bin", "nginx")),
    )

    node_mapping = _as_dict(raw.get("node"), "node")
    node_defaults = NodeConfig()
    node = NodeConfig(
        nvm_dir=_to_path(node_mapping.get("nvm_dir", str(node_defaults.nvm_dir))),
        nvm_version=str(node_mapping.get("nvm_version", node_defaults.nvm_version)),
        install_url=str(node_mapping.get("install_url", node_defaults.install_url)),
    )

    python_mapping = _as_dict(raw.get("python"), "python")
    extras_raw = python_mapping.get("extra_packages")
    if extras_raw is None:
        extra_packages = PythonConfig().extra_packages
    else:
        extra_packages = tuple(
            str(item) for item in _as_sequence(extras_raw, "python.extra_packages")
        )
    python = PythonConfig(
        python_bin=str(python_mapping.get("python_bin", "python3")),
        venv_name=str(python_mapping.get("venv_name", "venv")),
        extra_packages=extra_packages,
    )

    verify_mapping = _as_dict(raw.get("verify"), "verify")
    retries = _expect_int(verify_mapping.get("retries"), "verify.retries", default=10)
    if retries < 1:
        raise ConfigError("verify.retries must be at least 1.")
    delay_raw = verify_mapping.get("delay")
    delay = 1.5 if delay_raw is None else _expect_float(delay_raw, "verify.delay")
    if delay < 0:
        raise ConfigError("verify.delay must be non-negative.")
    verify = VerifyConfig(retries=retries, delay=delay)

    defaults_mapping = _as_dict(raw.get("defaults"), "defaults")
    base = ProvisioningDefaults()
    defaults = ProvisioningDefaults(
        concurrency_limit=_expect_int(
            defaults_mapping.get("concurrency_limit"),
            "defaults.concurrency_limit",
            default=base.concurrency_limit,
        ),
        backlog_size=_expect_int(
            defaults_mapping.get("backlog_size"),
            "defaults.backlog_size",
            default=base.backlog_size,
        ),
        nice=_expect_int(defaults_mapping.get("nice"), "defaults.nice", default=base.nice),
        cpu_quota=str(defaults_mapping.get("cpu_quota", base.cpu_quota)),
        memory_max=str(defaults_mapping.get("memory_max", base.memory_max)),
        gzip_comp_level=_expect_int(
            defaults_mapping.get("gzip_comp_level"),
            "defaults.gzip_comp_level",
            default=base.gzip_comp_level,
        ),
        keepalive_timeout=_expect_int(
            defaults_mapping.get("keepalive_timeout"),
            "defaults.keepalive_timeout",
            default=base.keepalive_timeout,
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        www_root=_to_path(raw.get("www_root")),
        state_dir=_to_path(raw.get("state_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        environment_dir=_to_path(raw.get("environment_dir")),
        app_log_dir=_to_path(raw.get("app_log_dir")),
        lock_timeout=lock_timeout,
        command_timeout=command_timeout,
        systemd=systemd,
        nginx=nginx,
        node=node,
        python=python,
        verify=verify,
        defaults=defaults,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    """Translate ``WEBAPPCTL_SECTION__KEY`` variables into a nested mapping."""
    tree: dict[str, object] = {}
    for name in sorted(env):
        if name in RESERVED_ENV_KEYS or not name.startswith(ENV_PREFIX):
            continue
        dotted = [part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part]
        if dotted:
            _assign_nested(tree, dotted, _coerce_value(env[name]))
    return tree


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    node = tree
    for segment in path[:-1]:
        child = node.setdefault(segment, {})
        if not isinstance(child, MutableMapping):
            raise ConfigError(
                f"Environment override {'.'.join(path)} collides with scalar {segment!r}."
            )
        node = cast(MutableMapping[str, object], child)
    node[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, incoming in overrides.items():
        current = target.get(key)
        if isinstance(current, MutableMapping) and isinstance(incoming, Mapping):
            _deep_merge(current, _as_dict(incoming, f"merge.{key}"))
        else:
            target[key] = incoming


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    # DEFAULTS only nests mappings and lists of scalars.
    return {
        key: (
            _deep_copy(_as_dict(value, key))
            if isinstance(value, Mapping)
            else list(value) if isinstance(value, list) else value
        )
        for key, value in source.items()
    }


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return value
    raise ConfigError(f"{label} must be a list of values, not {type(value).__name__}.")


def _coerce_value(raw: str) -> object:
    """Parse an environment string as a YAML scalar, keeping it verbatim on error."""
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _to_path(value: object) -> Path:
    if isinstance(value, (str, Path)):
        return Path(value).expanduser()
    raise ConfigError(f"Expected a filesystem path, got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"{label} is not a valid integer: {value!r}.") from exc
    raise ConfigError(f"{label} must be an integer, not {type(value).__name__}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"{label} is not a valid number: {value!r}.") from exc
    raise ConfigError(f"{label} must be a number, not {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string, got {value!r}.")
    return value


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    numeric = float(default) if value is None else _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Section {label} must be a mapping, not {type(value).__name__}.")
    bad = [key for key in value if not isinstance(key, str)]
    if bad:
        raise ConfigError(f"Section {label} has non-string keys: {bad!r}.")
    return dict(value)


__all__ = [
    "AppConfig",
    "ConfigError",
    "NginxConfig",
    "NodeConfig",
    "ProvisioningDefaults",
    "PythonConfig",
    "SystemdConfig",
    "VerifyConfig",
    "load_config",
]
