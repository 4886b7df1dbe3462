"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

import pytest

from serman.locking import LockManager
from serman.providers.nginx import NginxProvider
from serman.providers.systemd import SystemdProvider
from serman.registry import AppRegistry
from serman.runner import CommandRunner
from serman.state import StateRegistry
from serman.templates import TemplateEngine

BASIC_NGINX_CONF = (
    "user www-data;\n"
    "events {\n"
    "    worker_connections 768;\n"
    "}\n"
    "\n"
    "http {\n"
    "    sendfile on;\n"
    "    include /etc/nginx/conf.d/*.conf;\n"
    "}\n"
)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class CommandRecorder:
    """Record spawned commands and answer them with canned results.

    Unqueued ``cp`` commands really copy the file so that nginx patching can be
    observed on disk.
    """

    def __init__(self) -> None:
        """Start with no recorded calls and every command succeeding."""
        self.calls: list[tuple[str, ...]] = []
        self._responses: dict[tuple[str, ...], list[DummyResult | BaseException]] = {}

    def respond(self, *args: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Queue a result for the exact argument vector *args*."""
        self._responses.setdefault(tuple(args), []).append(
            DummyResult(returncode=returncode, stdout=stdout, stderr=stderr)
        )

    def fail(self, *args: str, stderr: str = "boom", times: int = 1) -> None:
        """Make *args* exit non-zero for the next *times* invocations."""
        for _ in range(times):
            self.respond(*args, returncode=1, stderr=stderr)

    def raise_on(self, *args: str, exc: BaseException) -> None:
        """Raise *exc* the next time *args* is spawned."""
        self._responses.setdefault(tuple(args), []).append(exc)

    def names(self) -> list[str]:
        """Return the recorded calls joined into strings, for readable asserts."""
        return [" ".join(call) for call in self.calls]

    def __call__(self, args: list[str]) -> DummyResult:
        """Record *args* and return (or raise) the queued response."""
        key = tuple(args)
        self.calls.append(key)
        queue = self._responses.get(key)
        if queue:
            response = queue.pop(0)
            if isinstance(response, BaseException):
                raise response
            return response
        if key[0] == "cp" and len(key) == 3:
            shutil.copyfile(key[1], key[2])
        return DummyResult()


@pytest.fixture
def commands(monkeypatch: pytest.MonkeyPatch) -> CommandRecorder:
    """Intercept every command spawned through :class:`CommandRunner`."""
    recorder = CommandRecorder()

    def fake_spawn(
        self: CommandRunner,
        args: list[str],
        timeout: float | None,
    ) -> subprocess.CompletedProcess[str]:
        return recorder(list(args))  # type: ignore[return-value]

    monkeypatch.setattr(CommandRunner, "_spawn", fake_spawn)
    return recorder


@pytest.fixture
def nginx_conf(tmp_path: Path) -> Path:
    """Return a writable nginx.conf containing a plain http block."""
    path = tmp_path / "nginx" / "nginx.conf"
    path.parent.mkdir(parents=True)
    path.write_text(BASIC_NGINX_CONF, encoding="utf-8")
    return path


@pytest.fixture
def systemd_provider(tmp_path: Path, commands: CommandRecorder) -> SystemdProvider:
    """Return a systemd provider writing units under the temporary path."""
    unit_dir = tmp_path / "systemd"
    unit_dir.mkdir()
    return SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        runner=CommandRunner(timeout=5.0),
        systemd_dir=unit_dir,
        apps_root=tmp_path / "servers",
        reload_retries=2,
        reload_backoff=0.0,
    )


@pytest.fixture
def nginx_provider(
    tmp_path: Path,
    nginx_conf: Path,
    commands: CommandRecorder,
) -> NginxProvider:
    """Return an nginx provider patching the temporary nginx.conf."""
    return NginxProvider(
        templates=TemplateEngine.with_overrides(None),
        runner=CommandRunner(timeout=5.0),
        config_file=nginx_conf,
        staging_file=tmp_path / "state" / "nginx.conf",
        reload_retries=2,
        reload_backoff=0.0,
    )


@pytest.fixture
def app_registry(
    tmp_path: Path,
    systemd_provider: SystemdProvider,
    nginx_provider: NginxProvider,
) -> AppRegistry:
    """Return an empty app registry wired to temporary providers."""
    return AppRegistry(
        state=StateRegistry(tmp_path / "state" / "apps.json"),
        systemd=systemd_provider,
        nginx=nginx_provider,
        locks=LockManager(tmp_path / "run", default_timeout=1.0),
    )
