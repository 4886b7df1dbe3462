"""Registry file helper tests."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from serman.models import AppRecord
from serman.state import StateRegistry, StateRegistryError


def test_read_missing_file_returns_empty_list(tmp_path: Path) -> None:
    """A missing registry file means no apps."""
    registry = StateRegistry(tmp_path / "apps.json")

    assert registry.exists() is False
    assert registry.read_apps() == []


def test_empty_file_is_treated_as_empty_registry(tmp_path: Path) -> None:
    """A zero-length file is read as an empty list."""
    path = tmp_path / "apps.json"
    path.write_text("", encoding="utf-8")

    assert StateRegistry(path).read_apps() == []


def test_write_and_read_roundtrip(tmp_path: Path) -> None:
    """Writing the registry and reading it back preserves order and fields."""
    registry = StateRegistry(tmp_path / "state" / "apps.json")
    records = [
        AppRecord(name="web", start="/srv/web/start.sh", port=3000, domains=["web.io"]),
        AppRecord(name="api", description="API", domains=["api.io", "www.api.io"]),
    ]

    registry.write_apps(records)

    path = tmp_path / "state" / "apps.json"
    assert (path.stat().st_mode & 0o777) == 0o640
    raw = path.read_text(encoding="utf-8")
    assert raw.endswith("]\n")
    assert json.loads(raw)[0] == {
        "name": "web",
        "description": "",
        "start": "/srv/web/start.sh",
        "port": 3000,
        "domains": ["web.io"],
        "config": "",
    }
    assert [record.to_dict() for record in registry.read_apps()] == [
        record.to_dict() for record in records
    ]


def test_reading_sanitizes_legacy_names(tmp_path: Path) -> None:
    """Entries written by hand are normalised on load."""
    path = tmp_path / "apps.json"
    path.write_text(json.dumps([{"name": "my app", "domains": "a.io b.io"}]), encoding="utf-8")

    (record,) = StateRegistry(path).read_apps()

    assert record.name == "my-app"
    assert record.domains == ["a.io", "b.io"]


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        '{"name": "object-not-array"}',
        '["just a string"]',
        '[{"name": "???"}]',
        '[{"name": "blog", "port": "soon"}]',
        '[{"name": "blog", "port": 3000.5}]',
    ],
)
def test_malformed_registry_raises(tmp_path: Path, content: str) -> None:
    """Malformed documents raise StateRegistryError."""
    path = tmp_path / "apps.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(StateRegistryError):
        StateRegistry(path).read_apps()


def test_write_failure_raises_state_registry_error(tmp_path: Path) -> None:
    """Write failures are reported as StateRegistryError."""
    blocker = tmp_path / "blocker"
    blocker.write_text("file", encoding="utf-8")
    registry = StateRegistry(blocker / "apps.json")

    with pytest.raises(StateRegistryError):
        registry.write_apps([AppRecord(name="x")])


def test_undecodable_registry_raises(tmp_path: Path) -> None:
    """A registry file that is not UTF-8 raises StateRegistryError."""
    path = tmp_path / "apps.json"
    path.write_bytes(b'[{"name": "caf\xe9"}]')

    with pytest.raises(StateRegistryError, match="Failed to read registry file"):
        StateRegistry(path).read_apps()


def test_integral_float_port_is_kept(tmp_path: Path) -> None:
    """Ports stored as whole floats keep their binding."""
    path = tmp_path / "apps.json"
    path.write_text('[{"name": "blog", "port": 3000.0}]', encoding="utf-8")

    (record,) = StateRegistry(path).read_apps()

    assert record.port == 3000
