"""Provider interfaces for serman."""
from __future__ import annotations

from .nginx import NginxApplyResult, NginxError, NginxProvider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "NginxApplyResult",
    "NginxError",
    "NginxProvider",
    "SystemdError",
    "SystemdProvider",
]
