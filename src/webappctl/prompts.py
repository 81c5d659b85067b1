"""Interactive collection of provisioning answers.

The collector walks a schema of :class:`FieldSpec` entries. In Easy mode any
field with a default is accepted silently; in Advanced mode the operator is
shown the explanation and may override the default. Answers supplied up
front (an answers file or CLI flags) skip the prompt but are validated by the
same validators, and an invalid one fails immediately because there is nobody
to ask again.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import typer
import yaml

from .config import ProvisioningDefaults
from .errors import ValidationError
from .models import InstallMode, ProvisioningConfig, RepoCredentials, Runtime, recommended_workers
from .validators import (
    validate_asgi_app,
    validate_code_name,
    validate_display_name,
    validate_domain,
    validate_git_username,
    validate_gzip_level,
    validate_integer,
    validate_memory_size,
    validate_nice_value,
    validate_percentage,
    validate_port,
    validate_positive_integer,
    validate_repo_url,
    validate_runtime,
    validate_token,
)

LOGGER = logging.getLogger(__name__)

INVALID_INPUT = "Invalid input. Please try again."

Validator = Callable[[str], object]


class Prompter(Protocol):
    """Terminal interactions the collector relies on."""

    def ask(self, text: str, *, hide_input: bool = False) -> str:
        """Return one line of input (may be empty)."""
        ...

    def confirm(self, text: str, *, default: bool) -> bool:
        """Return the operator's yes/no answer."""
        ...

    def echo(self, text: str) -> None:
        """Show *text* to the operator."""
        ...


class TyperPrompter:
    """Prompter backed by :func:`typer.prompt` and :func:`typer.confirm`."""

    def ask(self, text: str, *, hide_input: bool = False) -> str:
        """Prompt for a value, allowing blank answers."""
        return str(
            typer.prompt(text, default="", show_default=False, hide_input=hide_input)
        )

    def confirm(self, text: str, *, default: bool) -> bool:
        """Ask a yes/no question."""
        return bool(typer.confirm(text, default=default))

    def echo(self, text: str) -> None:
        """Print *text*."""
        typer.echo(text)


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """One answer the collector asks for."""

    name: str
    prompt: str
    explanation: str = ""
    validator: Validator | None = None
    default: object | Callable[[], object] | None = None
    required: bool = True
    secret: bool = False

    def resolve_default(self) -> object | None:
        """Return the default value, calling it when it is a factory."""
        if callable(self.default):
            return self.default()
        return self.default

    def validate(self, raw: object) -> object:
        """Return the normalised value for *raw* or raise :class:`ValidationError`."""
        text = str(raw).strip()
        if self.validator is None:
            if not text:
                raise ValidationError(f"{self.name} must not be empty.")
            return text
        return self.validator(text)


def build_schema(
    runtime: Runtime,
    defaults: ProvisioningDefaults | None = None,
) -> tuple[FieldSpec, ...]:
    """Return the ordered questions for *runtime*."""
    base = defaults or ProvisioningDefaults()
    fields: list[FieldSpec] = [
        FieldSpec(
            "display_name",
            "Enter the Nice name of the app: ",
            "This is a human-readable name for your application.",
            validate_display_name,
        ),
        FieldSpec(
            "code_name",
            "Enter the code name of the app: ",
            "This is the name used for system files and directories.",
            validate_code_name,
        ),
        FieldSpec(
            "repo_url",
            "Enter the GitHub repo URL: ",
            "The URL of the GitHub repository containing your application code.",
            validate_repo_url,
        ),
        FieldSpec(
            "github_username",
            "Enter your GitHub username (leave blank for public repos): ",
            validator=validate_git_username,
            required=False,
        ),
        FieldSpec(
            "github_token",
            "Enter your GitHub Personal Access Token (leave blank for public repos): ",
            validator=validate_token,
            required=False,
            secret=True,
        ),
        FieldSpec(
            "domain",
            "Enter the domain name: ",
            "The domain name where your application will be accessible.",
            validate_domain,
        ),
        FieldSpec(
            "port",
            "Enter the port to run the app on: ",
            "The port number on which your application will listen (between 1024 and 65535).",
            validate_port,
        ),
        FieldSpec(
            "workers",
            f"Enter the number of workers (recommended: {recommended_workers()}): ",
            "The number of worker processes to spawn (integer).",
            validate_positive_integer,
            recommended_workers,
        ),
        FieldSpec(
            "concurrency_limit",
            "Enter the concurrency limit: ",
            "The maximum number of concurrent connections (integer).",
            validate_positive_integer,
            base.concurrency_limit,
        ),
        FieldSpec(
            "backlog_size",
            "Enter the backlog size: ",
            "The maximum number of pending connections (integer).",
            validate_positive_integer,
            base.backlog_size,
        ),
        FieldSpec(
            "nice",
            "Enter the Nice value (-20 to 19): ",
            "The Nice value for process priority (-20 to 19, lower is higher priority).",
            validate_nice_value,
            base.nice,
        ),
        FieldSpec(
            "cpu_quota",
            "Enter the CPU quota (e.g., 50%): ",
            "The maximum CPU usage allowed for the application (percentage).",
            validate_percentage,
            base.cpu_quota,
        ),
        FieldSpec(
            "memory_max",
            "Enter the maximum memory usage (e.g., 1G): ",
            "The maximum memory usage allowed for the application (e.g., 0.5G, 1G).",
            validate_memory_size,
            base.memory_max,
        ),
    ]
    if runtime is Runtime.FASTAPI:
        fields.append(
            FieldSpec(
                "asgi_app",
                "Enter the ASGI application (module:attribute): ",
                "The object uvicorn serves, e.g. main:app.",
                validate_asgi_app,
                "main:app",
            )
        )
    fields.extend(
        [
            FieldSpec(
                "keepalive_timeout",
                "Enter NGINX keepalive timeout: ",
                "Seconds an idle keep-alive connection stays open.",
                validate_integer,
                base.keepalive_timeout,
            ),
            FieldSpec(
                "gzip_comp_level",
                "Enter NGINX gzip compression level (1-9): ",
                "Higher levels compress better at the cost of CPU.",
                validate_gzip_level,
                base.gzip_comp_level,
            ),
        ]
    )
    return tuple(fields)


RUNTIME_FIELD = FieldSpec(
    "runtime",
    "Choose the application runtime (node/fastapi): ",
    "Node.js apps are started with npm; FastAPI apps run under uvicorn.",
    validate_runtime,
)


def load_answers(path: Path) -> dict[str, object]:
    """Read preset answers from a YAML mapping."""
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ValidationError(f"Cannot read answers file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ValidationError(f"Failed to parse answers file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ValidationError(f"Answers file {path} must contain a mapping.")
    return {str(key): value for key, value in data.items() if value is not None}


class InputCollector:
    """Ask for (or accept preset) answers and build a :class:`ProvisioningConfig`."""

    def __init__(
        self,
        prompter: Prompter | None = None,
        *,
        presets: Mapping[str, object] | None = None,
        defaults: ProvisioningDefaults | None = None,
        www_root: Path = Path("/var/www"),
        nvm_dir: Path = Path("/usr/local/nvm"),
        max_attempts: int | None = None,
    ) -> None:
        """Configure the collector; *max_attempts* bounds re-prompts per field."""
        self.prompter = prompter or TyperPrompter()
        self.presets = dict(presets or {})
        self.defaults = defaults or ProvisioningDefaults()
        self.www_root = Path(www_root)
        self.nvm_dir = Path(nvm_dir)
        self.max_attempts = max_attempts

    def collect_mode(self) -> InstallMode:
        """Return the installation mode, asking until the answer is valid."""
        preset = self.presets.get("mode")
        if preset is not None:
            mode = _parse_mode(str(preset))
            if mode is None:
                raise ValidationError(f"Invalid mode {preset!r}; expected Easy or Advanced.")
            return mode
        attempts = 0
        while True:
            answer = self.prompter.ask("Choose Installation Mode (Easy/Advanced): ")
            mode = _parse_mode(answer)
            if mode is not None:
                return mode
            self.prompter.echo("Invalid input. Please enter 'Easy' or 'Advanced'.")
            attempts += 1
            self._check_attempts("mode", attempts)

    def collect_field(self, spec: FieldSpec, mode: InstallMode) -> object | None:
        """Return the validated value for *spec* (``None`` for a skipped optional field)."""
        if spec.name in self.presets:
            raw_preset = self.presets[spec.name]
            if not spec.required and not str(raw_preset).strip():
                return None
            try:
                return spec.validate(raw_preset)
            except ValidationError as exc:
                raise ValidationError(f"Invalid value for {spec.name}: {exc}") from exc

        default = spec.resolve_default()
        if default is not None and mode is InstallMode.EASY:
            self.prompter.echo(f"Using default value for {spec.name}: {default}")
            return spec.validate(default)

        if spec.explanation:
            self.prompter.echo(spec.explanation)
        if default is not None:
            if self.prompter.confirm(f"Use default value ({default})?", default=True):
                return spec.validate(default)

        attempts = 0
        while True:
            raw = self.prompter.ask(spec.prompt, hide_input=spec.secret)
            if not raw.strip() and not spec.required:
                return None
            try:
                return spec.validate(raw)
            except ValidationError as exc:
                LOGGER.debug("Rejected %s: %s", spec.name, exc)
                self.prompter.echo(INVALID_INPUT)
            attempts += 1
            self._check_attempts(spec.name, attempts)

    def collect_runtime(self, mode: InstallMode) -> Runtime:
        """Return the runtime, from presets or by asking."""
        value = self.collect_field(RUNTIME_FIELD, mode)
        return Runtime(str(value))

    def collect(self) -> ProvisioningConfig:
        """Collect every answer and return the immutable config."""
        mode = self.collect_mode()
        runtime = self.collect_runtime(mode)
        schema = build_schema(runtime, self.defaults)
        known = {spec.name for spec in schema} | {"mode", RUNTIME_FIELD.name}
        unknown = sorted(set(self.presets) - known)
        if unknown:
            raise ValidationError(f"Unknown answers: {', '.join(unknown)}.")
        answers: dict[str, object] = {}
        for spec in schema:
            answers[spec.name] = self.collect_field(spec, mode)
        return self.build_config(runtime, answers)

    def build_config(self, runtime: Runtime, answers: Mapping[str, object]) -> ProvisioningConfig:
        """Turn validated *answers* into a :class:`ProvisioningConfig`."""
        values = dict(answers)
        username = values.pop("github_username", None)
        token = values.pop("github_token", None)
        credentials = None
        if username and token:
            credentials = RepoCredentials(username=str(username), token=str(token))
        elif username or token:
            LOGGER.info("Only one of GitHub username/token given; cloning anonymously")
        code_name = str(values["code_name"])
        return ProvisioningConfig(
            runtime=runtime,
            app_dir=self.www_root / code_name,
            credentials=credentials,
            nvm_dir=self.nvm_dir,
            **values,  # type: ignore[arg-type]
        )

    def _check_attempts(self, name: str, attempts: int) -> None:
        if self.max_attempts is not None and attempts >= self.max_attempts:
            raise ValidationError(f"No valid value for {name} after {attempts} attempts.")


def _parse_mode(answer: str) -> InstallMode | None:
    normalized = answer.strip().lower()
    for mode in InstallMode:
        if mode.value.lower() == normalized:
            return mode
    return None


def collect_from_answers(
    answers: Mapping[str, object],
    *,
    defaults: ProvisioningDefaults | None = None,
    www_root: Path = Path("/var/www"),
    nvm_dir: Path = Path("/usr/local/nvm"),
) -> ProvisioningConfig:
    """Build a config from *answers* alone; missing required answers are errors."""
    presets = {"mode": "Easy", **dict(answers)}
    collector = InputCollector(
        _NoPrompter(),
        presets=presets,
        defaults=defaults,
        www_root=www_root,
        nvm_dir=nvm_dir,
        max_attempts=1,
    )
    return collector.collect()


class _NoPrompter:
    def ask(self, text: str, *, hide_input: bool = False) -> str:
        return ""

    def confirm(self, text: str, *, default: bool) -> bool:
        return default

    def echo(self, text: str) -> None:
        LOGGER.debug(text)


__all__ = [
    "FieldSpec",
    "INVALID_INPUT",
    "InputCollector",
    "Prompter",
    "TyperPrompter",
    "build_schema",
    "collect_from_answers",
    "load_answers",
]
