"""Systemd provider for managing app service units."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..errors import SermanError
from ..models import AppRecord, sanitize_name
from ..runner import CommandRunner
from ..templates import TemplateEngine, write_text_atomic


class SystemdError(SermanError):
    """Raised when systemd operations fail."""


def _looks_like_script(start: str) -> bool:
    return bool(start) and not any(char.isspace() for char in start) and (
        "/" in start or start.endswith(".sh")
    )


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage systemd service units for serman apps."""

    templates: TemplateEngine
    runner: CommandRunner
    systemd_dir: Path = Path("/etc/systemd/system")
    apps_root: Path = Path("/root/servers")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    elevate: bool = False
    reload_retries: int = 3
    reload_backoff: float = 0.5

    def unit_name(self, name: str) -> str:
        """Return the systemd unit name for the app called *name*."""
        return f"{sanitize_name(name)}.service"

    def unit_path(self, name: str) -> Path:
        """Return the full path for the app's unit file."""
        return self.systemd_dir / self.unit_name(name)

    def unit_exists(self, name: str) -> bool:
        """Return ``True`` when a unit file for *name* is present on disk."""
        return self.unit_path(name).exists()

    def render_unit(self, record: AppRecord) -> str:
        """Return the unit file text for *record*.

        A ``start`` value that looks like a script path is run with bash inside
        the script's directory. Any other value is treated as a command line
        and run through ``bash -c`` inside ``<apps_root>/<name>``.
        """
        start = record.start.strip()
        if not start:
            raise SystemdError(f"App {record.name} has no start command.")
        if _looks_like_script(start):
            script = Path(start)
            if not script.is_absolute():
                script = self.apps_root / record.name / script
            working_directory = script.parent
            exec_start = f"/bin/bash {script}"
        else:
            working_directory = self.apps_root / record.name
            escaped = start.replace("\\", "\\\\").replace('"', '\\"')
            exec_start = f'/bin/bash -c "{escaped}"'
        return self.templates.render_to_string(
            "systemd/service.j2",
            {
                "description": record.description or record.name,
                "working_directory": str(working_directory),
                "exec_start": exec_start,
            },
        )

    def write_unit(self, record: AppRecord) -> bool:
        """Write the unit file for *record*; return ``True`` when it changed."""
        content = self.render_unit(record)
        try:
            return write_text_atomic(self.unit_path(record.name), content, mode=0o644)
        except OSError as exc:
            raise SystemdError(
                f"Failed to create service file for {record.name}.\n{exc}"
            ) from exc

    def make_service(self, record: AppRecord) -> str:
        """Write the unit, reload systemd, then start and enable the service."""
        self.write_unit(record)
        self.daemon_reload()
        message = self.start(record.name)
        self.enable(record.name)
        return message

    def update_service(self, record: AppRecord) -> str:
        """Replace any existing unit for *record* and relaunch the service."""
        self.delete_unit_file(record.name)
        return self.make_service(record)

    def delete_unit_file(self, name: str) -> bool:
        """Delete the unit file for *name*; return ``True`` if one existed."""
        path = self.unit_path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise SystemdError(f"Failed to delete service file for {name}: {exc}") from exc
        return True

    def remove(self, name: str) -> None:
        """Remove the unit file for *name* and reload systemd."""
        self.delete_unit_file(name)
        self.daemon_reload()

    def deactivate(self, name: str) -> None:
        """Stop and disable the service, ignoring failures.

        The service may already be stopped or may never have been started, so
        neither step is allowed to abort the caller.
        """
        unit = self.unit_name(name)
        self.runner.best_effort([self.systemctl_bin, "stop", unit], elevate=self.elevate)
        self.runner.best_effort([self.systemctl_bin, "disable", unit], elevate=self.elevate)

    def discard(self, name: str) -> None:
        """Undo a partially created service without raising."""
        self.deactivate(name)
        self.delete_unit_file(name)
        self.runner.best_effort([self.systemctl_bin, "daemon-reload"], elevate=self.elevate)

    def enable(self, name: str) -> str:
        """Enable the app's unit."""
        return self._systemctl("enable", self.unit_name(name))

    def disable(self, name: str) -> str:
        """Disable the app's unit."""
        return self._systemctl("disable", self.unit_name(name))

    def start(self, name: str) -> str:
        """Start the app's unit."""
        return self._systemctl("start", self.unit_name(name))

    def stop(self, name: str) -> str:
        """Stop the app's unit."""
        return self._systemctl("stop", self.unit_name(name))

    def restart(self, name: str) -> str:
        """Restart the app's unit."""
        return self._systemctl("restart", self.unit_name(name))

    def status(self, name: str) -> str:
        """Return ``systemctl status`` output without failing on inactive units."""
        return self.runner.run(
            [self.systemctl_bin, "--no-pager", "status", self.unit_name(name)],
            elevate=self.elevate,
            check=False,
        )

    def logs(self, name: str, *, lines: int | None = None, since: str | None = None) -> str:
        """Return journalctl output for the app's unit."""
        args: list[str] = [self.journalctl_bin, "--unit", self.unit_name(name), "--no-pager"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        if since is not None:
            args.extend(["--since", since])
        return self.runner.run(args, elevate=self.elevate)

    def daemon_reload(self) -> None:
        """Ask systemd to re-read unit files, retrying transient failures."""
        self.runner.run_with_retry(
            [self.systemctl_bin, "daemon-reload"],
            attempts=self.reload_retries,
            backoff=self.reload_backoff,
            elevate=self.elevate,
        )

    # ------------------------------------------------------------------
    def _systemctl(self, command: str, unit: str) -> str:
        return self.runner.run([self.systemctl_bin, command, unit], elevate=self.elevate)


__all__ = ["SystemdProvider", "SystemdError"]
