"""Persisted state: models, file layout and the TOML-backed store."""

from .models import (
    Account,
    Credentials,
    PendingStep,
    StaleDnsRecord,
    StateSnapshot,
    Tunnel,
    TunnelMode,
    Zone,
)
from .paths import Paths
from .store import StateStore, atomic_write

__all__ = [
    "Account",
    "Credentials",
    "PendingStep",
    "StaleDnsRecord",
    "StateSnapshot",
    "Tunnel",
    "TunnelMode",
    "Zone",
    "Paths",
    "StateStore",
    "atomic_write",
]
