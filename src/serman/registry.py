"""Reconciliation engine keeping the registry, unit files and nginx in sync.

:class:`AppRegistry` owns the in-memory list of app records. Every mutation
follows the same order:

1. validate the request (no side effect happens before validation passes),
2. apply the systemd side of the change,
3. persist the new list through :meth:`AppRegistry.update`, which also
   reloads the registry from disk and regenerates the nginx region from the
   full list.

Mutations hold the global registry lock for their whole read-modify-write
cycle and re-read the registry once the lock is held, so two concurrent
invocations cannot lose each other's updates.
"""
from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import cast

from .errors import (
    DomainConflictError,
    DuplicateNameError,
    NotFoundError,
    PermissionDeniedError,
    SermanError,
)
from .locking import LockManager
from .models import PORT_STOPPED, AppField, AppRecord, sanitize_name, validate_port
from .providers.nginx import NginxApplyResult, NginxError, NginxProvider
from .providers.systemd import SystemdError, SystemdProvider
from .state import StateRegistry

Mutation = Callable[[list[AppRecord]], list[AppRecord]]


@contextmanager
def _primary_action(description: str) -> Iterator[None]:
    """Re-raise provider failures as :class:`SystemdError` with *description*."""
    try:
        yield
    except SystemdError:
        raise
    except SermanError as exc:
        raise SystemdError(f"{description}.\n{exc}") from exc


@dataclass(slots=True)
class SyncReport:
    """Outcome of a full regeneration."""

    units_changed: list[str]
    nginx: NginxApplyResult


@dataclass
class AppRegistry:
    """Authoritative collection of app records plus the reconciliation logic."""

    state: StateRegistry
    systemd: SystemdProvider
    nginx: NginxProvider
    locks: LockManager
    apps: list[AppRecord] = field(default_factory=list)
    lock_wait_ms: int = 0
    _lock_depth: int = field(default=0, repr=False)

    def __post_init__(self) -> None:
        """Load the registry from disk."""
        self.refresh()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def refresh(self) -> None:
        """Re-read the registry file, discarding the in-memory list."""
        self.apps = self.state.read_apps()

    def get(self, name: str) -> AppRecord | None:
        """Return the registered record called *name*, if any."""
        normalized = sanitize_name(name)
        return next((app for app in self.apps if app.name == normalized), None)

    def exists(self, candidate: AppRecord | str) -> bool:
        """Return ``True`` if the app is registered or has a unit file on disk.

        The unit file check catches orphans left behind when a previous
        command created the service but failed before persisting the registry.
        """
        name = candidate.name if isinstance(candidate, AppRecord) else sanitize_name(candidate)
        if self.get(name) is not None:
            return True
        return self.systemd.unit_exists(name)

    def domain_conflicts(
        self,
        domains: list[str],
        *,
        exclude: str | None = None,
    ) -> list[str]:
        """Return the names of apps already claiming any of *domains*."""
        return [
            app.name
            for app in self.apps
            if app.name != exclude and any(domain in app.domains for domain in domains)
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def add(self, record: AppRecord) -> str:
        """Create the service for *record* and register it."""
        with self._mutation():
            if self.exists(record):
                raise DuplicateNameError(record.name)
            conflicts = self.domain_conflicts(record.domains)
            if conflicts:
                raise DomainConflictError(record.name, conflicts)

            try:
                message = self.systemd.make_service(record)
            except SermanError as exc:
                self.systemd.discard(record.name)
                raise SystemdError(f"Failed to create service for {record.name}.\n{exc}") from exc

            self.update(lambda apps: [*apps, record])
            return message

    def remove(self, candidate: AppRecord | str) -> None:
        """Stop, disable and delete the app's service, then unregister it."""
        name = _name_of(candidate)
        with self._mutation():
            if not self.exists(name):
                raise NotFoundError(name)
            self.systemd.deactivate(name)
            with _primary_action(f"Failed to remove service for {name}"):
                self.systemd.remove(name)
            self.update(lambda apps: [app for app in apps if app.name != name])

    def point(self, name: str, port: object) -> NginxApplyResult:
        """Bind the app called *name* to *port* and regenerate nginx.

        The unit file is left alone: the service's command line does not depend
        on the port.
        """
        port_value = validate_port(port)
        with self._mutation():
            record = self.get(name)
            if record is None:
                raise NotFoundError(sanitize_name(name))
            return self.update(_setter(record.name, AppField.PORT, port_value))

    def start(self, candidate: AppRecord | str) -> str:
        """Start and enable the app's service."""
        name = _name_of(candidate)
        with self._mutation():
            if not self.exists(name):
                raise NotFoundError(name)
            with _primary_action(f"Failed to start service for {name}"):
                message = self.systemd.start(name)
                self.systemd.enable(name)
            return message

    def stop(self, candidate: AppRecord | str) -> None:
        """Stop and disable the app's service and mark it as not serving."""
        name = _name_of(candidate)
        with self._mutation():
            if not self.exists(name):
                raise NotFoundError(name)
            with _primary_action(f"Failed to stop service for {name}"):
                self.systemd.stop(name)
                self.systemd.disable(name)
                self.systemd.daemon_reload()
            self.update(_setter(name, AppField.PORT, PORT_STOPPED))

    def restart(self, candidate: AppRecord | str) -> str:
        """Reload systemd and restart the app's service."""
        name = _name_of(candidate)
        with self._mutation():
            if not self.exists(name):
                raise NotFoundError(name)
            with _primary_action(f"Failed to restart service for {name}"):
                self.systemd.daemon_reload()
                return self.systemd.restart(name)

    def change(self, candidate: AppRecord | str, key: str, value: object) -> AppRecord:
        """Set *key* to *value* on the app and regenerate what depends on it.

        Changing ``port`` only regenerates nginx, exactly like :meth:`point`;
        every other field also rewrites and relaunches the service unit.
        Changing ``domains`` is re-checked against the other apps.
        """
        app_field = AppField.parse(key)
        coerced = app_field.coerce(value)
        name = _name_of(candidate)
        with self._mutation():
            record = self.get(name)
            if record is None:
                raise NotFoundError(name)

            if app_field is AppField.NAME:
                return self._rename(record, str(coerced))

            if app_field is AppField.DOMAINS:
                conflicts = self.domain_conflicts(cast(list[str], coerced), exclude=record.name)
                if conflicts:
                    raise DomainConflictError(record.name, conflicts)

            self.update(_setter(record.name, app_field, coerced))
            updated = self._require(record.name)
            if app_field is not AppField.PORT:
                with _primary_action(f"Failed to change property {key} for {record.name}"):
                    self.systemd.update_service(updated)
            return updated

    def sync(self) -> SyncReport:
        """Rewrite every unit file and the nginx region from the registry."""
        with self._mutation():
            changed: list[str] = []
            with _primary_action("Failed to regenerate service units"):
                for record in self.apps:
                    if not record.start.strip():
                        continue
                    if self.systemd.write_unit(record):
                        changed.append(record.name)
                if changed:
                    self.systemd.daemon_reload()
            return SyncReport(units_changed=changed, nginx=self._apply_nginx())

    def update(self, mutation: Mutation) -> NginxApplyResult:
        """Apply *mutation*, persist the list, reload it and regenerate nginx.

        This is the only code path that writes the registry file.
        """
        with self._mutation():
            self.apps = mutation(list(self.apps))
            self.state.write_apps(self.apps)
            self.refresh()
            return self._apply_nginx()

    # ------------------------------------------------------------------
    def _rename(self, record: AppRecord, new_name: str) -> AppRecord:
        if new_name == record.name:
            return record
        if self.exists(new_name):
            raise DuplicateNameError(new_name)
        self.systemd.deactivate(record.name)
        self.systemd.delete_unit_file(record.name)
        self.update(_setter(record.name, AppField.NAME, new_name))
        renamed = self._require(new_name)
        if renamed.start.strip():
            with _primary_action(f"Failed to create service for {new_name}"):
                self.systemd.make_service(renamed)
        else:
            with _primary_action(f"Failed to unload service for {record.name}"):
                self.systemd.daemon_reload()
        return renamed

    def _require(self, name: str) -> AppRecord:
        record = self.get(name)
        if record is None:
            raise NotFoundError(name)
        return record

    def _apply_nginx(self) -> NginxApplyResult:
        try:
            return self.nginx.apply(self.apps)
        except PermissionDeniedError:
            raise
        except SermanError as exc:
            raise NginxError(f"Error updating nginx configuration.\n{exc}") from exc

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        if self._lock_depth:
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
            return
        with self.locks.registry_lock() as handle:
            self.lock_wait_ms = handle.wait_ms
            self._lock_depth = 1
            try:
                self.refresh()
                yield
            finally:
                self._lock_depth = 0


def _name_of(candidate: AppRecord | str) -> str:
    if isinstance(candidate, AppRecord):
        return candidate.name
    return sanitize_name(candidate)


def _setter(name: str, app_field: AppField, value: object) -> Mutation:
    """Return a mutation assigning *value* to *app_field* on the app *name*."""

    def _apply(apps: list[AppRecord]) -> list[AppRecord]:
        for app in apps:
            if app.name == name:
                setattr(app, app_field.value, value)
        return apps

    return _apply


__all__ = ["AppRegistry", "Mutation", "SyncReport"]
