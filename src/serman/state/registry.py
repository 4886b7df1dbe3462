"""Helpers for interacting with the serman registry file.

The registry file (``/var/lib/serman/apps.json`` by default) is a JSON array of
app records and is the single source of truth for every generated artifact.
Writes go through a temporary file and ``os.replace`` so readers never observe
a half-written document.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from ..errors import InvalidNameError, InvalidPortError, SermanError
from ..models import AppRecord


class StateRegistryError(SermanError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """Read and atomically write the JSON registry file."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the path after initialisation."""
        object.__setattr__(self, "path", Path(self.path).expanduser())

    def ensure_parent(self) -> None:
        """Create the directory holding the registry file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        """Return ``True`` when the registry file is present."""
        return self.path.exists()

    def read_raw(self) -> list[object]:
        """Return the decoded JSON array (empty when the file is missing)."""
        if not self.path.exists():
            return []
        try:
            text = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise StateRegistryError(f"Failed to read registry file {self.path}: {exc}") from exc
        if not text.strip():
            return []
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StateRegistryError(f"Failed to parse registry file {self.path}: {exc}") from exc
        if not isinstance(data, list):
            raise StateRegistryError(
                f"Registry file {self.path} must contain a JSON array at the top level."
            )
        return data

    def read_apps(self) -> list[AppRecord]:
        """Return the app records stored in the registry, in file order."""
        records: list[AppRecord] = []
        for index, entry in enumerate(self.read_raw()):
            if not isinstance(entry, Mapping):
                raise StateRegistryError(
                    f"Registry entry #{index} in {self.path} is not an object."
                )
            try:
                records.append(AppRecord.from_mapping(entry))
            except (InvalidNameError, InvalidPortError) as exc:
                raise StateRegistryError(
                    f"Registry entry #{index} in {self.path} is invalid: {exc}"
                ) from exc
        return records

    def write_apps(self, records: Iterable[AppRecord]) -> None:
        """Atomically persist *records* to the registry file."""
        payload = [record.to_dict() for record in records]
        try:
            self.ensure_parent()
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
            )
        except OSError as exc:
            raise StateRegistryError(
                f"Failed to save the registry to {self.path}: {exc}"
            ) from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o640)
        except OSError as exc:
            raise StateRegistryError(
                f"Failed to save the registry to {self.path}: {exc}"
            ) from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = ["StateRegistry", "StateRegistryError"]
