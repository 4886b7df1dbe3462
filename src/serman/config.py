"""Layered configuration for serman.

Sources are applied in increasing precedence:

1. Built-in defaults (:data:`DEFAULTS`).
2. A YAML file, ``/etc/serman/config.yml`` unless ``--config-file`` or
   ``SERMAN_CONFIG_FILE`` points elsewhere. A missing file is not an error.
3. ``SERMAN_*`` environment variables. A double underscore descends into a
   section, so ``SERMAN_NGINX__CONFIG_FILE`` sets ``nginx.config_file``.
   Values go through ``yaml.safe_load`` which turns ``"false"`` into ``False``
   and ``"45"`` into ``45``.
4. Programmatic overrides (the CLI's global flags).

Unknown keys are rejected rather than ignored so that typos surface early.
"""
from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import SermanError

ENV_PREFIX = "SERMAN_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
DEFAULT_CONFIG_FILE = "/etc/serman/config.yml"


class ConfigError(SermanError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SystemdConfig:
    """Where unit files live and which binaries drive them."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def to_dict(self) -> dict[str, object]:
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
        }


@dataclass(frozen=True)
class NginxConfig:
    """Location of the shared nginx configuration and how to reload it."""

    config_file: Path
    staging_file: Path
    reload_command: tuple[str, ...] = ("systemctl", "restart", "nginx")

    def to_dict(self) -> dict[str, object]:
        return {
            "config_file": str(self.config_file),
            "staging_file": str(self.staging_file),
            "reload_command": list(self.reload_command),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for serman."""

    config_file: Path
    state_dir: Path
    registry_file: Path
    apps_root: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    command_timeout: float
    require_root: bool
    elevate: bool
    sudo_bin: str
    reload_retries: int
    reload_backoff: float
    systemd: SystemdConfig
    nginx: NginxConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable view, paths rendered as strings."""
        result: dict[str, object] = {}
        for name in SCALAR_KEYS:
            value = getattr(self, name)
            result[name] = str(value) if isinstance(value, Path) else value
        result["systemd"] = self.systemd.to_dict()
        result["nginx"] = self.nginx.to_dict()
        return result


# ``None`` marks values derived from other settings once everything is merged.
DEFAULTS: dict[str, object] = {
    "state_dir": "/var/lib/serman",
    "registry_file": None,
    "apps_root": None,
    "logs_dir": "/var/log/serman",
    "runtime_dir": "/run/serman",
    "templates_dir": "/etc/serman/templates",
    "lock_timeout": 30.0,
    "command_timeout": 120.0,
    "require_root": True,
    "elevate": False,
    "sudo_bin": "sudo",
    "reload_retries": 3,
    "reload_backoff": 0.5,
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
    },
    "nginx": {
        "config_file": "/etc/nginx/nginx.conf",
        "staging_file": None,
        "reload_command": ["systemctl", "restart", "nginx"],
    },
}

SECTIONS = ("systemd", "nginx")
SCALAR_KEYS = ("config_file",) + tuple(key for key in DEFAULTS if key not in SECTIONS)


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Merge every configuration source into an :class:`AppConfig`."""
    environ = dict(os.environ if env is None else env)
    if config_file:
        path = Path(config_file)
    else:
        path = Path(environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE))

    merged = _layer(DEFAULTS, {})
    for label, layer in (
        (f"file:{path}", _read_file(path)),
        ("environment", _from_environment(environ)),
        ("overrides", dict(overrides or {})),
    ):
        _check_keys(layer, label)
        merged = _layer(merged, layer)

    return _resolve(merged, path, environ)


def default_apps_root(env: Mapping[str, str]) -> Path:
    """Return ``/home/<user>/servers`` for the user who invoked serman.

    ``SUDO_USER`` wins over ``USER`` so that ``sudo serman init`` still places
    apps under the calling user's home directory.
    """
    user = env.get("SUDO_USER") or env.get("USER") or "root"
    if user == "root":
        return Path("/root/servers")
    return Path("/home") / user / "servers"


def _read_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return dict(document)


def _from_environment(environ: Mapping[str, str]) -> dict[str, object]:
    found: dict[str, object] = {}
    for key, raw in sorted(environ.items()):
        if key == CONFIG_ENV_VAR or not key.startswith(ENV_PREFIX):
            continue
        segments = [part.lower() for part in key[len(ENV_PREFIX):].split("__") if part]
        if not segments or len(segments) > 2:
            continue
        try:
            value = yaml.safe_load(raw.strip())
        except yaml.YAMLError:
            value = raw.strip()
        if len(segments) == 1:
            found[segments[0]] = value
            continue
        section = found.setdefault(segments[0], {})
        if not isinstance(section, dict):
            raise ConfigError(f"{key} conflicts with a scalar value for {segments[0]}.")
        section[segments[1]] = value
    return found


def _check_keys(layer: Mapping[str, object], label: str) -> None:
    unknown = sorted(str(key) for key in layer if key not in DEFAULTS and key != "config_file")
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)} ({label}).")
    for section in SECTIONS:
        if section not in layer:
            continue
        values = layer[section]
        if not isinstance(values, Mapping):
            raise ConfigError(f"Expected {section} to be a mapping ({label}).")
        allowed = cast(dict[str, object], DEFAULTS[section])
        extra = sorted(str(key) for key in values if key not in allowed)
        if extra:
            raise ConfigError(
                f"Unknown {section} configuration keys: {', '.join(extra)} ({label})."
            )


def _layer(base: Mapping[str, object], top: Mapping[str, object]) -> dict[str, object]:
    """Return *base* updated with *top*, merging section mappings one level deep."""
    result: dict[str, object] = {}
    for key, value in base.items():
        result[key] = dict(value) if isinstance(value, Mapping) else value
    for key, value in top.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            current.update(value)
        else:
            result[key] = value
    return result


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, os.PathLike)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"Expected {label} to be a filesystem path. Got {value!r}.")


def _text(value: object, label: str) -> str:
    if isinstance(value, str) and value:
        return value
    raise ConfigError(f"Expected {label} to be a non-empty string. Got {value!r}.")


def _flag(value: object, label: str) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc


def _positive(value: object, label: str) -> float:
    number = _number(value, label)
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _non_negative(value: object, label: str) -> float:
    number = _number(value, label)
    if number < 0:
        raise ConfigError(f"{label} must not be negative. Got {number}.")
    return number


def _attempts(value: object, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ConfigError(f"Expected {label} to be an integer. Got {value!r}.")
    try:
        count = int(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    if count < 1:
        raise ConfigError(f"{label} must be at least 1. Got {count}.")
    return count


def _argv(value: object, label: str) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = tuple(value.split())
    elif isinstance(value, (list, tuple)):
        parts = tuple(str(part) for part in value)
    else:
        raise ConfigError(f"Expected {label} to be a command. Got {value!r}.")
    if not parts:
        raise ConfigError(f"{label} must not be empty.")
    return parts


_CONVERTERS: dict[str, Callable[[object, str], object]] = {
    "state_dir": _path,
    "logs_dir": _path,
    "runtime_dir": _path,
    "templates_dir": _path,
    "lock_timeout": _positive,
    "command_timeout": _positive,
    "require_root": _flag,
    "elevate": _flag,
    "sudo_bin": _text,
    "reload_retries": _attempts,
    "reload_backoff": _non_negative,
}


def _resolve(merged: Mapping[str, object], path: Path, environ: Mapping[str, str]) -> AppConfig:
    values: dict[str, object] = {
        key: convert(merged[key], key) for key, convert in _CONVERTERS.items()
    }
    state_dir = cast(Path, values["state_dir"])

    registry_raw = merged.get("registry_file")
    apps_root_raw = merged.get("apps_root")
    systemd_raw = cast(Mapping[str, object], merged["systemd"])
    nginx_raw = cast(Mapping[str, object], merged["nginx"])
    staging_raw = nginx_raw.get("staging_file")

    return AppConfig(
        config_file=path,
        registry_file=(
            state_dir / "apps.json"
            if registry_raw is None
            else _path(registry_raw, "registry_file")
        ),
        apps_root=(
            default_apps_root(environ)
            if apps_root_raw is None
            else _path(apps_root_raw, "apps_root")
        ),
        systemd=SystemdConfig(
            unit_dir=_path(systemd_raw["unit_dir"], "systemd.unit_dir"),
            systemctl_bin=_text(systemd_raw["systemctl_bin"], "systemd.systemctl_bin"),
            journalctl_bin=_text(systemd_raw["journalctl_bin"], "systemd.journalctl_bin"),
        ),
        nginx=NginxConfig(
            config_file=_path(nginx_raw["config_file"], "nginx.config_file"),
            staging_file=(
                state_dir / "nginx.conf"
                if staging_raw is None
                else _path(staging_raw, "nginx.staging_file")
            ),
            reload_command=_argv(nginx_raw["reload_command"], "nginx.reload_command"),
        ),
        **values,  # type: ignore[arg-type]
    )


__all__ = [
    "AppConfig",
    "ConfigError",
    "NginxConfig",
    "SystemdConfig",
    "default_apps_root",
    "load_config",
]
