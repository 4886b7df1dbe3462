"""Exception hierarchy shared by the serman engine and its providers."""
from __future__ import annotations

from collections.abc import Sequence


class SermanError(RuntimeError):
    """Base class for every failure surfaced to the CLI."""


class InvalidNameError(SermanError):
    """Raised when an app name sanitizes to an empty identifier."""


class DuplicateNameError(SermanError):
    """Raised when an app with the same name (or unit file) already exists."""

    def __init__(self, name: str) -> None:
        """Record the conflicting *name*."""
        super().__init__(
            f"App with name {name} already exists in either the registry or as a "
            f"service ({name}.service)."
        )
        self.name = name


class DomainConflictError(SermanError):
    """Raised when an app shares at least one domain with other apps."""

    def __init__(self, name: str, conflicts: Sequence[str]) -> None:
        """Record the offending app *name* and the apps it collides with."""
        joined = ", ".join(conflicts)
        super().__init__(
            f"The following apps have at least one domain in common with {name}: {joined}"
        )
        self.name = name
        self.conflicts = tuple(conflicts)


class NotFoundError(SermanError):
    """Raised when an app is neither registered nor present as a unit file."""

    def __init__(self, name: str) -> None:
        """Record the missing app *name*."""
        super().__init__(f"App {name} does not exist in the registry or as a service.")
        self.name = name


class InvalidPortError(SermanError):
    """Raised when a port falls outside the bindable range."""

    def __init__(self, port: object) -> None:
        """Record the rejected *port* value."""
        super().__init__(f"Port number must be between 1024 and 65535 (got {port}).")
        self.port = port


class UnknownFieldError(SermanError):
    """Raised when ``change`` receives a key that is not an app field."""

    def __init__(self, key: str) -> None:
        """Record the unknown *key*."""
        super().__init__(f"Key {key} doesn't exist.")
        self.key = key


class CommandFailedError(SermanError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(self, command: Sequence[str], exit_code: int, stderr: str) -> None:
        """Record the command vector, exit code and captured stderr."""
        message = stderr.strip() or "no output"
        super().__init__(
            f"{' '.join(command)} failed (exit {exit_code}): {message}"
        )
        self.command = tuple(command)
        self.exit_code = exit_code
        self.stderr = stderr


class TimedOutError(SermanError):
    """Raised when an external command exceeds its timeout."""

    def __init__(self, command: Sequence[str], timeout: float) -> None:
        """Record the command vector and the timeout that expired."""
        super().__init__(f"{' '.join(command)} timed out after {timeout:g}s")
        self.command = tuple(command)
        self.timeout = timeout


class PermissionDeniedError(SermanError):
    """Raised when the nginx configuration cannot be written."""

    def __init__(self, path: object) -> None:
        """Record the unwritable *path*."""
        super().__init__(f"Permission denied. Run: sudo chown $USER:$USER {path}")
        self.path = path


class ConfigParseError(SermanError):
    """Raised when no recognizable structural block is found in nginx config."""


__all__ = [
    "CommandFailedError",
    "ConfigParseError",
    "DomainConflictError",
    "DuplicateNameError",
    "InvalidNameError",
    "InvalidPortError",
    "NotFoundError",
    "PermissionDeniedError",
    "SermanError",
    "TimedOutError",
    "UnknownFieldError",
]
