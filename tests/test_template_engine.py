"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
from jinja2 import UndefinedError

from serman.templates import TemplateEngine, write_text_atomic

SERVICE_CONTEXT = {
    "description": "Blog backend",
    "working_directory": "/home/alice/servers/blog",
    "exec_start": "/bin/bash /home/alice/servers/blog/start.sh",
}


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render the unit sections."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("systemd/service.j2", SERVICE_CONTEXT)

    assert "Description=Blog backend" in output
    assert "After=network.target" in output
    assert "Restart=always" in output
    assert "ExecStart=/bin/bash /home/alice/servers/blog/start.sh" in output
    assert "WantedBy=multi-user.target" in output


def test_render_uses_strict_variables() -> None:
    """Missing variables fail loudly instead of rendering blanks."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(UndefinedError):
        engine.render_to_string("systemd/service.j2", {"description": "x"})


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "blog" / "start.sh"
    context = {"name": "blog", "server_dir": "/srv/blog/server", "command": "npm start"}

    changed = engine.render_to_path("scripts/start.sh.j2", destination, context, mode=0o755)

    assert changed is True
    assert oct(destination.stat().st_mode & 0o777) == "0o755"
    text = destination.read_text(encoding="utf-8")
    assert text.startswith("#!/bin/bash\n")
    assert 'cd "/srv/blog/server" || exit 1' in text
    assert "exec npm start" in text

    # Second render with same content should be a no-op.
    assert engine.render_to_path("scripts/start.sh.j2", destination, context, mode=0o755) is False


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    override_template = override_dir / "systemd" / "service.j2"
    override_template.parent.mkdir(parents=True)
    override_template.write_text("override {{ description }}", encoding="utf-8")

    engine = TemplateEngine.with_overrides(override_dir)

    assert engine.render_to_string("systemd/service.j2", SERVICE_CONTEXT) == "override Blog backend"


def test_missing_override_dir_falls_back_to_builtins(tmp_path: Path) -> None:
    """A configured but absent override directory is ignored."""
    engine = TemplateEngine.with_overrides(tmp_path / "absent")

    assert "Restart=always" in engine.render_to_string("systemd/service.j2", SERVICE_CONTEXT)


def test_write_text_atomic_leaves_no_temporary_files(tmp_path: Path) -> None:
    """Atomic writes replace the destination and clean up after themselves."""
    destination = tmp_path / "unit.service"
    destination.write_text("old", encoding="utf-8")

    assert write_text_atomic(destination, "new", mode=0o644) is True

    assert destination.read_text(encoding="utf-8") == "new"
    assert sorted(path.name for path in tmp_path.iterdir()) == ["unit.service"]
