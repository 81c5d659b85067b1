"""Error taxonomy shared by every webappctl component.

Errors are grouped by how the top-level flow reacts to them:

``ValidationError``
    Bad operator input. The input collector re-prompts.
``PreflightError``
    A missing or unfixable prerequisite detected before anything was
    created on the host. Fatal, no teardown required.
``ExternalCommandError``
    A collaborator (apt, git, systemctl, nginx, npm, pip) exited non-zero
    or timed out. Triggers teardown of everything recorded so far.
``PartialTeardownWarning``
    An inverse action failed during teardown. Logged and collected, never
    raised.
"""
from __future__ import annotations

from collections.abc import Sequence


class WebappctlError(RuntimeError):
    """Base class for webappctl failures."""


class ConfigError(WebappctlError):
    """Raised when tool configuration parsing fails."""


class ValidationError(WebappctlError, ValueError):
    """Raised when an input value fails validation."""


class RenderError(ValidationError):
    """Raised when a value cannot be embedded safely into rendered configuration."""


class ApplicationNotFoundError(ValidationError):
    """Raised when uninstall targets an application with no trace on the host."""


class PreflightError(WebappctlError):
    """Raised when a host prerequisite is missing or cannot be satisfied."""


class PortInUseError(PreflightError):
    """Raised when a listening socket already occupies the requested port."""

    def __init__(self, port: int, owners: Sequence[str] = ()) -> None:
        """Record the offending *port* and any processes reported as owners."""
        self.port = port
        self.owners = tuple(owners)
        detail = f" ({', '.join(self.owners)})" if self.owners else ""
        super().__init__(f"Port {port} is already in use{detail}.")


class LockTimeoutError(PreflightError):
    """Raised when the per-application lock cannot be acquired in time."""


class RootRequiredError(PreflightError):
    """Raised when a host-mutating command runs without root privileges."""


class UserExistsConflict(PreflightError):
    """Raised when an existing OS user is incompatible with the requested app."""


class ExternalCommandError(WebappctlError):
    """Raised when an external command exits non-zero."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int | None,
        output: str = "",
        *,
        message: str | None = None,
    ) -> None:
        """Store the (already redacted) *command*, its exit status and output."""
        self.command = tuple(command)
        self.returncode = returncode
        self.output = output
        if message is None:
            joined = " ".join(self.command)
            detail = output.strip() or "no output"
            message = f"{joined} failed (exit {returncode}): {detail}"
        super().__init__(message)


class ExternalCommandTimeout(ExternalCommandError):
    """Raised when an external command exceeds its time budget."""

    def __init__(self, command: Sequence[str], timeout: float) -> None:
        """Record the command and the timeout that expired."""
        self.timeout = timeout
        joined = " ".join(command)
        super().__init__(
            command,
            None,
            message=f"{joined} timed out after {timeout:g}s",
        )


class CloneError(ExternalCommandError):
    """Raised when cloning the application repository fails."""


class LifecycleError(ExternalCommandError):
    """Raised when a managed unit fails to advance to its next state."""

    def __init__(self, unit: str, last_state: object, cause: BaseException) -> None:
        """Capture the *unit*, the last state it reached and the underlying *cause*."""
        self.unit = unit
        self.last_state = last_state
        self.cause = cause
        command = getattr(cause, "command", ())
        returncode = getattr(cause, "returncode", None)
        state_name = getattr(last_state, "name", str(last_state))
        super().__init__(
            command,
            returncode,
            message=f"{unit} stopped at {state_name}: {cause}",
        )


class ProvisioningInterrupted(WebappctlError):
    """Raised when the operator interrupts a provisioning run."""


class PartialTeardownWarning(UserWarning):
    """An inverse action failed during teardown; remaining steps still ran."""


__all__ = [
    "ApplicationNotFoundError",
    "CloneError",
    "ConfigError",
    "ExternalCommandError",
    "ExternalCommandTimeout",
    "LifecycleError",
    "LockTimeoutError",
    "PartialTeardownWarning",
    "PortInUseError",
    "PreflightError",
    "ProvisioningInterrupted",
    "RenderError",
    "RootRequiredError",
    "UserExistsConflict",
    "ValidationError",
    "WebappctlError",
]
