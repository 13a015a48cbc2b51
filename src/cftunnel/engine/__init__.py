"""Tunnel operations, status derivation and background polling."""

from .operations import (
    CancelToken,
    DeleteReport,
    OperationEngine,
    OperationResult,
    Step,
    StepOutcome,
)
from .poller import HealthEvent, PollSnapshot, StatusPoller
from .status import RuntimeState, TunnelStatus, TunnelView, derive_status, transition_status

__all__ = [
    "CancelToken",
    "DeleteReport",
    "OperationEngine",
    "OperationResult",
    "Step",
    "StepOutcome",
    "HealthEvent",
    "PollSnapshot",
    "StatusPoller",
    "RuntimeState",
    "TunnelStatus",
    "TunnelView",
    "derive_status",
    "transition_status",
]
