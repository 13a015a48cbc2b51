"""OS service backends: systemd user units and launchd agents."""

import platform

from ..config import Settings
from ..state.paths import Paths
from .base import ServiceAdapter, ServiceState, UnsupportedServiceAdapter
from .launchd import LaunchdAdapter
from .systemd import SystemdUserAdapter


def select_adapter(settings: Settings, paths: Paths, system: str | None = None) -> ServiceAdapter:
    """Pick the backend for the running platform."""
    system = system if system is not None else platform.system()
    if system == "Linux":
        return SystemdUserAdapter(paths, settings.daemon_binary, settings.command_timeout)
    if system == "Darwin":
        return LaunchdAdapter(paths, settings.daemon_binary, settings.command_timeout)
    return UnsupportedServiceAdapter(
        paths, system, settings.daemon_binary, settings.command_timeout
    )


__all__ = [
    "LaunchdAdapter",
    "ServiceAdapter",
    "ServiceState",
    "SystemdUserAdapter",
    "UnsupportedServiceAdapter",
    "select_adapter",
]
