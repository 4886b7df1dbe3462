"""App record model and field helpers."""
from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from .errors import InvalidNameError, InvalidPortError, UnknownFieldError

MIN_PORT = 1024
MAX_PORT = 65535
PORT_UNSET = -1
PORT_STOPPED = 0

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9-]+")
_DOMAIN_SEPARATORS = re.compile(r"[\s,]+")


def sanitize_name(raw: str) -> str:
    """Return the canonical identifier for an app name.

    Runs of characters outside ``[A-Za-z0-9-]`` collapse to a single hyphen and
    leading/trailing hyphens are dropped, so the result is safe to use as a
    systemd unit name, a path component and a command argument.
    """
    collapsed = _UNSAFE_NAME_CHARS.sub("-", str(raw))
    collapsed = re.sub(r"-{2,}", "-", collapsed).strip("-")
    if not collapsed:
        raise InvalidNameError(f"App name {raw!r} does not contain any usable characters.")
    return collapsed


def validate_port(value: object) -> int:
    """Return *value* as a bindable port, raising :class:`InvalidPortError`."""
    port = _coerce_int(value)
    if port is None or port < MIN_PORT or port > MAX_PORT:
        raise InvalidPortError(value)
    return port


def parse_domains(value: object) -> list[str]:
    """Normalise *value* into an ordered, de-duplicated list of hostnames."""
    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[object] = _DOMAIN_SEPARATORS.split(value)
    elif isinstance(value, Iterable):
        items = value
    else:
        items = [value]
    domains: list[str] = []
    for item in items:
        domain = str(item).strip()
        if domain and domain not in domains:
            domains.append(domain)
    return domains


def _coerce_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _stored_port(value: object) -> int:
    if value is None:
        return PORT_UNSET
    port = _coerce_int(value)
    if port is None:
        raise InvalidPortError(value)
    return port


@dataclass(slots=True)
class AppRecord:
    """One managed application as persisted in the registry file."""

    name: str
    description: str = ""
    start: str = ""
    port: int = PORT_UNSET
    domains: list[str] = field(default_factory=list)
    config: str = ""

    def __post_init__(self) -> None:
        """Sanitize the name and normalise the remaining fields."""
        self.name = sanitize_name(self.name)
        self.description = str(self.description or "")
        self.start = str(self.start or "")
        port = _coerce_int(self.port)
        self.port = PORT_UNSET if port is None else port
        self.domains = parse_domains(self.domains)
        self.config = str(self.config or "")

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> AppRecord:
        """Build a record from a registry entry, tolerating missing keys."""
        return cls(
            name=str(data.get("name", "")),
            description=str(data.get("description") or ""),
            start=str(data.get("start") or ""),
            port=_stored_port(data.get("port")),
            domains=data.get("domains") or [],  # type: ignore[arg-type]
            config=str(data.get("config") or ""),
        )

    def to_dict(self) -> dict[str, object]:
        """Return the JSON-serialisable registry entry."""
        return {
            "name": self.name,
            "description": self.description,
            "start": self.start,
            "port": self.port,
            "domains": list(self.domains),
            "config": self.config,
        }

    @property
    def is_active(self) -> bool:
        """Return ``True`` when the app is bound to a usable port."""
        return MIN_PORT <= self.port <= MAX_PORT

    def shares_domains_with(self, other: AppRecord) -> bool:
        """Return ``True`` when *other* claims at least one of our domains."""
        return any(domain in other.domains for domain in self.domains)


class AppField(str, Enum):
    """Fields that ``change`` is allowed to set."""

    NAME = "name"
    DESCRIPTION = "description"
    START = "start"
    PORT = "port"
    DOMAINS = "domains"
    CONFIG = "config"

    @classmethod
    def parse(cls, key: str) -> AppField:
        """Return the field matching *key* or raise :class:`UnknownFieldError`."""
        normalized = str(key).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise UnknownFieldError(str(key))

    def coerce(self, value: object) -> object:
        """Convert raw CLI input into the type stored for this field."""
        if self is AppField.NAME:
            return sanitize_name(str(value))
        if self is AppField.PORT:
            port = _coerce_int(value)
            if port in (PORT_UNSET, PORT_STOPPED):
                return port
            return validate_port(value)
        if self is AppField.DOMAINS:
            return parse_domains(value)
        return "" if value is None else str(value)


__all__ = [
    "AppField",
    "AppRecord",
    "MAX_PORT",
    "MIN_PORT",
    "PORT_STOPPED",
    "PORT_UNSET",
    "parse_domains",
    "sanitize_name",
    "validate_port",
]
