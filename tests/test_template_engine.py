"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
from jinja2 import UndefinedError

from webappctl.templates import TemplateEngine, write_if_changed

SITE_CONTEXT = {
    "server_name": "demo.example.com",
    "keepalive_timeout": 65,
    "denied_files": [r"\.env"],
    "upstream": "127.0.0.1:3000",
    "gzip_comp_level": 6,
    "gzip_types": ["text/plain", "application/json"],
    "static_extensions": ["css", "js"],
}


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("nginx/site.conf.j2", SITE_CONTEXT)

    assert "server_name demo.example.com;" in output
    assert "proxy_pass http://127.0.0.1:3000;" in output
    assert "text/plain\n" in output
    assert "application/json;\n" in output


def test_missing_variable_is_an_error() -> None:
    """StrictUndefined turns a forgotten context key into an exception."""
    engine = TemplateEngine.with_overrides(None)
    context = dict(SITE_CONTEXT)
    del context["upstream"]

    with pytest.raises(UndefinedError):
        engine.render_to_string("nginx/site.conf.j2", context)


def test_rendered_site_is_written_once_with_mode(tmp_path: Path) -> None:
    """Writing rendered text sets the mode and skips identical rewrites."""
    text = TemplateEngine.with_overrides(None).render_to_string("nginx/site.conf.j2", SITE_CONTEXT)
    destination = tmp_path / "sites" / "demo"

    changed = write_if_changed(destination, text, mode=0o600)

    assert changed is True
    assert destination.exists()
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    assert write_if_changed(destination, text, mode=0o600) is False


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    override_template = override_dir / "nginx" / "site.conf.j2"
    override_template.parent.mkdir(parents=True)
    override_template.write_text("override {{ server_name }}", encoding="utf-8")

    engine = TemplateEngine.with_overrides(override_dir)

    assert engine.render_to_string("nginx/site.conf.j2", SITE_CONTEXT) == (
        "override demo.example.com"
    )


def test_missing_override_directory_falls_back(tmp_path: Path) -> None:
    """A configured but absent override directory is ignored."""
    engine = TemplateEngine.with_overrides(tmp_path / "does-not-exist")

    assert "server {" in engine.render_to_string("nginx/site.conf.j2", SITE_CONTEXT)


def test_write_if_changed_replaces_and_leaves_no_temp_files(tmp_path: Path) -> None:
    """Writes are atomic and identical content is left alone."""
    target = tmp_path / "unit.service"

    assert write_if_changed(target, "one\n") is True
    assert write_if_changed(target, "one\n") is False
    assert write_if_changed(target, "two\n") is True

    assert target.read_text(encoding="utf-8") == "two\n"
    assert [path.name for path in tmp_path.iterdir()] == ["unit.service"]
