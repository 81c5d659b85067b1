"""Input validators for provisioning answers.

Each validator accepts the raw text typed by the operator and returns the
normalised value, raising :class:`~webappctl.errors.ValidationError` when the
input is unacceptable. Values that end up inside systemd or nginx syntax are
restricted to character sets that cannot break out of their directive.
"""
from __future__ import annotations

import re
from urllib.parse import urlsplit

from .errors import ValidationError

_DIGITS = re.compile(r"[0-9]+")
_SIGNED_DIGITS = re.compile(r"-?[0-9]+")
_PERCENT = re.compile(r"([0-9]+)%")
_MEMORY = re.compile(r"[0-9]+(\.[0-9]+)?[KMGT]?")
# POSIX portable username that is also a valid systemd unit prefix.
_CODE_NAME = re.compile(r"[a-z_][a-z0-9_-]{0,31}")
_DOMAIN_LABEL = re.compile(r"[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?")
_UNSAFE_TEXT = re.compile(r"[\x00-\x1f\x7f\"'`\\$%;{}]")
_URL_PATH = re.compile(r"[A-Za-z0-9._~/+-]*")
_GIT_USER = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})")
_ASGI_APP = re.compile(r"[A-Za-z_][A-Za-z0-9_.]*:[A-Za-z_][A-Za-z0-9_]*")

RUNTIMES = ("node", "fastapi")


def validate_port(value: str) -> int:
    """Return *value* as a port number in the unprivileged range 1024-65535."""
    text = str(value).strip()
    if not _DIGITS.fullmatch(text):
        raise ValidationError(f"Port must be numeric, got {value!r}.")
    port = int(text)
    if port < 1024 or port > 65535:
        raise ValidationError(f"Port must be between 1024 and 65535, got {port}.")
    return port


def validate_integer(value: str) -> int:
    """Return *value* as a non-negative integer (no upper bound)."""
    text = str(value).strip()
    if not _DIGITS.fullmatch(text):
        raise ValidationError(f"Expected a non-negative integer, got {value!r}.")
    return int(text)


def validate_positive_integer(value: str) -> int:
    """Return *value* as an integer greater than zero."""
    number = validate_integer(value)
    if number < 1:
        raise ValidationError("Value must be at least 1.")
    return number


def validate_percentage(value: str) -> str:
    """Return *value* when it is an integer percentage between 0% and 100%."""
    text = str(value).strip()
    match = _PERCENT.fullmatch(text)
    if match is None:
        raise ValidationError(f"Expected a percentage such as 50%, got {value!r}.")
    if int(match.group(1)) > 100:
        raise ValidationError(f"Percentage must not exceed 100%, got {text}.")
    return text


def validate_nice_value(value: str) -> int:
    """Return *value* as a process nice value between -20 and 19."""
    text = str(value).strip()
    if not _SIGNED_DIGITS.fullmatch(text):
        raise ValidationError(f"Nice value must be an integer, got {value!r}.")
    nice = int(text)
    if nice < -20 or nice > 19:
        raise ValidationError(f"Nice value must be between -20 and 19, got {nice}.")
    return nice


def validate_gzip_level(value: str) -> int:
    """Return *value* as a gzip compression level between 1 and 9."""
    level = validate_integer(value)
    if level < 1 or level > 9:
        raise ValidationError(f"Gzip compression level must be between 1 and 9, got {level}.")
    return level


def validate_memory_size(value: str) -> str:
    """Return *value* when it is a systemd memory size such as ``512M`` or ``1.5G``."""
    text = str(value).strip().upper()
    if not _MEMORY.fullmatch(text):
        raise ValidationError(f"Expected a memory size such as 512M or 1G, got {value!r}.")
    return text


def validate_code_name(value: str) -> str:
    """Return *value* when usable as an OS username, directory and unit name."""
    text = str(value).strip()
    if not _CODE_NAME.fullmatch(text):
        raise ValidationError(
            "Code name must start with a lowercase letter or underscore and contain only "
            "lowercase letters, digits, '_' or '-' (max 32 characters)."
        )
    return text


def validate_domain(value: str) -> str:
    """Return the lower-cased domain when every label is a valid hostname label."""
    text = str(value).strip().lower().rstrip(".")
    if not text:
        raise ValidationError("Domain must be a non-empty string.")
    if len(text) > 253:
        raise ValidationError("Domain must be 253 characters or fewer.")
    for label in text.split("."):
        if not _DOMAIN_LABEL.fullmatch(label):
            raise ValidationError(
                f"Invalid domain {value!r}: labels may contain letters, digits and inner hyphens."
            )
    return text


def validate_display_name(value: str) -> str:
    """Return *value* when it is free of control and config metacharacters."""
    text = str(value).strip()
    if not text:
        raise ValidationError("Name must not be empty.")
    if len(text) > 128:
        raise ValidationError("Name must be 128 characters or fewer.")
    if _UNSAFE_TEXT.search(text):
        raise ValidationError(
            "Name must not contain quotes, backslashes, '$', '%', ';', braces or control "
            "characters."
        )
    return text


def validate_repo_url(value: str) -> str:
    """Return *value* when it is a credential-free https repository URL."""
    text = str(value).strip()
    parts = urlsplit(text)
    if parts.scheme != "https" or not parts.hostname:
        raise ValidationError(f"Repository URL must use https, got {value!r}.")
    if parts.username or parts.password:
        raise ValidationError("Repository URL must not embed credentials.")
    if parts.query or parts.fragment:
        raise ValidationError("Repository URL must not contain a query or fragment.")
    validate_domain(parts.hostname)
    if not _URL_PATH.fullmatch(parts.path):
        raise ValidationError(f"Repository URL path contains unsupported characters: {value!r}.")
    return text


def validate_git_username(value: str) -> str:
    """Return *value* when it looks like a GitHub username."""
    text = str(value).strip()
    if not _GIT_USER.fullmatch(text):
        raise ValidationError(f"Invalid GitHub username {value!r}.")
    return text


def validate_token(value: str) -> str:
    """Return *value* when it is a non-empty token without whitespace."""
    text = str(value).strip()
    if not text or any(char.isspace() for char in text) or "@" in text or ":" in text:
        raise ValidationError("Access token must be a single word without ':' or '@'.")
    return text


def validate_asgi_app(value: str) -> str:
    """Return *value* when it is a ``module:attribute`` ASGI target such as ``main:app``."""
    text = str(value).strip()
    if not _ASGI_APP.fullmatch(text):
        raise ValidationError(f"ASGI app must look like module:attribute, got {value!r}.")
    return text


def validate_runtime(value: str) -> str:
    """Return the runtime name (``node`` or ``fastapi``)."""
    text = str(value).strip().lower()
    if text not in RUNTIMES:
        raise ValidationError(f"Runtime must be one of: {', '.join(RUNTIMES)}.")
    return text


__all__ = [
    "RUNTIMES",
    "validate_asgi_app",
    "validate_code_name",
    "validate_display_name",
    "validate_domain",
    "validate_git_username",
    "validate_gzip_level",
    "validate_integer",
    "validate_memory_size",
    "validate_nice_value",
    "validate_percentage",
    "validate_port",
    "validate_positive_integer",
    "validate_repo_url",
    "validate_runtime",
    "validate_token",
]
