"""Thin wrapper around :func:`subprocess.run` for every external command.

All host mutations go through :class:`CommandRunner` so that timeouts, privilege
dropping and secret redaction are applied uniformly, and so tests can swap in
a recording fake.
"""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ExternalCommandError, ExternalCommandTimeout

LOGGER = logging.getLogger(__name__)

REDACTED = "***"


def redact(text: str, secrets: Sequence[str]) -> str:
    """Return *text* with every non-empty secret replaced by ``***``."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


@dataclass(slots=True)
class CommandRunner:
    """Execute external commands with a bounded timeout."""

    timeout: float = 1800.0
    sudo_bin: str = "sudo"
    secrets: list[str] = field(default_factory=list)

    def add_secret(self, value: str) -> None:
        """Register *value* for redaction in logs and error messages."""
        if value and value not in self.secrets:
            self.secrets.append(value)

    def run(
        self,
        args: Sequence[str],
        *,
        user: str | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        preserve_env: Sequence[str] = (),
        input_text: str | None = None,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args*, optionally as *user*, and return the completed process.

        *env* replaces the environment of the child. With a *user*, sudo resets
        it again, so the names in *preserve_env* are the ones carried through.

        Raises :class:`ExternalCommandError` when the command is missing or,
        with ``check=True``, exits non-zero. Raises
        :class:`ExternalCommandTimeout` when it exceeds its time budget.
        """
        command = list(args)
        if user is not None:
            prefix = [self.sudo_bin, "-u", user, "-H"]
            if preserve_env:
                prefix.append(f"--preserve-env={','.join(preserve_env)}")
            command = [*prefix, *command]
        shown = [redact(part, self.secrets) for part in command]
        limit = self.timeout if timeout is None else timeout
        LOGGER.debug("Running %s (cwd=%s)", " ".join(shown), cwd)
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                input=input_text,
                timeout=limit,
            )
        except subprocess.TimeoutExpired:
            raise ExternalCommandTimeout(shown, limit) from None
        except FileNotFoundError as exc:
            raise ExternalCommandError(
                shown,
                127,
                message=f"{shown[0]} not found: {redact(str(exc), self.secrets)}",
            ) from exc
        if check and result.returncode != 0:
            output = (result.stderr or "").strip() or (result.stdout or "").strip()
            raise ExternalCommandError(shown, result.returncode, redact(output, self.secrets))
        return result

    def succeeds(self, args: Sequence[str], **kwargs: object) -> bool:
        """Return ``True`` when *args* exits zero; a missing binary counts as failure."""
        try:
            result = self.run(args, check=False, **kwargs)  # type: ignore[arg-type]
        except ExternalCommandTimeout:
            raise
        except ExternalCommandError:
            return False
        return result.returncode == 0


__all__ = ["REDACTED", "CommandRunner", "redact"]
