"""Command execution helpers used for every interaction with the OS."""
from __future__ import annotations

import logging
import shlex
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from .errors import CommandFailedError, SermanError, TimedOutError

LOGGER = logging.getLogger(__name__)

Command = str | Sequence[str]


def split_command(command: Command) -> list[str]:
    """Split *command* into an argument vector without shell interpretation."""
    if isinstance(command, str):
        args = shlex.split(command)
    else:
        args = [str(part) for part in command]
    if not args:
        raise SermanError("Refusing to run an empty command.")
    return args


@dataclass(slots=True)
class CommandRunner:
    """Run external commands with bounded timeouts and optional elevation.

    Commands are always passed to :func:`subprocess.run` as an argument vector,
    never through a shell. When elevation is requested the vector is prefixed
    with ``sudo_bin``. Every executed vector is appended to ``history``.
    """

    timeout: float | None = 120.0
    sudo_bin: str = "sudo"
    history: list[tuple[str, ...]] = field(default_factory=list)

    def run(
        self,
        command: Command,
        *,
        elevate: bool = False,
        timeout: float | None = None,
        check: bool = True,
    ) -> str:
        """Run *command* and return its standard output.

        Raises :class:`CommandFailedError` on a non-zero exit status (when
        *check* is true) and :class:`TimedOutError` when the timeout expires.
        """
        args = split_command(command)
        if elevate:
            args = [self.sudo_bin, *args]
        self.history.append(tuple(args))

        effective_timeout = self.timeout if timeout is None else timeout
        try:
            result = self._spawn(args, effective_timeout)
        except subprocess.TimeoutExpired as exc:
            raise TimedOutError(args, effective_timeout or 0.0) from exc
        except FileNotFoundError as exc:
            raise CommandFailedError(args, 127, f"{args[0]} not found: {exc}") from exc

        stdout = result.stdout or ""
        if check and result.returncode != 0:
            stderr = result.stderr or stdout
            raise CommandFailedError(args, result.returncode, stderr)
        return stdout

    def best_effort(self, command: Command, *, elevate: bool = False) -> str | None:
        """Run *command*, logging and swallowing any failure.

        Used for cleanup steps that must not abort the surrounding operation,
        such as stopping a service that may never have been started.
        """
        try:
            return self.run(command, elevate=elevate)
        except SermanError as exc:
            LOGGER.warning("ignored failure: %s", exc)
            return None

    def run_with_retry(
        self,
        command: Command,
        *,
        attempts: int = 3,
        backoff: float = 0.5,
        elevate: bool = False,
    ) -> str:
        """Run *command*, retrying up to *attempts* times with linear backoff."""
        attempts = max(1, attempts)
        for attempt in range(1, attempts + 1):
            try:
                return self.run(command, elevate=elevate)
            except SermanError as exc:
                if attempt == attempts:
                    raise
                LOGGER.warning(
                    "attempt %d/%d failed, retrying in %.1fs: %s",
                    attempt,
                    attempts,
                    backoff * attempt,
                    exc,
                )
                time.sleep(backoff * attempt)
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    def _spawn(
        self,
        args: Sequence[str],
        timeout: float | None,
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.run(  # noqa: S603
            list(args),
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )


__all__ = ["Command", "CommandRunner", "split_command"]
