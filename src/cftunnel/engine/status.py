"""Derived runtime status of a tunnel. Never persisted."""

from enum import Enum

from pydantic import BaseModel, ConfigDict

from ..daemon.metrics import MetricsHistory, MetricsSnapshot
from ..daemon.probe import Health
from ..service.base import ServiceState
from ..state.models import PendingStep, Tunnel, TunnelMode


class RuntimeState(str, Enum):
    UNKNOWN = "unknown"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"
    UNHEALTHY = "unhealthy"


# operations that move a tunnel towards running or stopped; others leave it as it is
_STARTING_OPERATIONS = {"add", "start", "restart", "edit", "import"}
_STOPPING_OPERATIONS = {"stop", "delete"}


class TunnelStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: RuntimeState
    reason: str = ""

    def __str__(self) -> str:
        if self.reason:
            return f"{self.state.value}: {self.reason}"
        return self.state.value


class TunnelView(BaseModel):
    """Everything the presentation layer shows for one tunnel."""

    model_config = ConfigDict(frozen=True)

    tunnel: Tunnel
    status: TunnelStatus
    service: ServiceState | None = None
    health: Health = Health.UNKNOWN
    metrics: MetricsSnapshot | None = None
    history: MetricsHistory = MetricsHistory()
    operation: str | None = None
    health_checked_at: float | None = None

    @property
    def key(self) -> tuple[str, str]:
        return self.tunnel.key

    @property
    def sparkline(self) -> str:
        return self.history.sparkline()


def transition_status(operation: str, current: TunnelStatus | None = None) -> TunnelStatus:
    """Status shown while ``operation`` runs.

    Operations that neither start nor stop the tunnel keep ``current`` and
    only name the operation.
    """
    if operation in _STARTING_OPERATIONS:
        return TunnelStatus(state=RuntimeState.STARTING, reason=operation)
    if operation in _STOPPING_OPERATIONS:
        return TunnelStatus(state=RuntimeState.STOPPING, reason=operation)
    state = current.state if current is not None else RuntimeState.UNKNOWN
    return TunnelStatus(state=state, reason=operation)


def derive_status(
    tunnel: Tunnel,
    service: ServiceState | None,
    health: Health = Health.UNKNOWN,
    metrics_available: bool = False,
    operation: str | None = None,
) -> TunnelStatus:
    """Combine what the record wants with what the OS and the daemon report."""
    if operation is not None:
        current = derive_status(tunnel, service, health, metrics_available)
        return transition_status(operation, current)

    if tunnel.mode is TunnelMode.EPHEMERAL:
        if metrics_available or health is Health.HEALTHY:
            return TunnelStatus(state=RuntimeState.RUNNING)
        return TunnelStatus(state=RuntimeState.UNKNOWN)

    if PendingStep.DELETE in tunnel.pending:
        return TunnelStatus(state=RuntimeState.ERROR, reason="delete incomplete")
    if service is None:
        return TunnelStatus(state=RuntimeState.UNKNOWN)

    if service is ServiceState.ACTIVE:
        if health is Health.UNREACHABLE:
            return TunnelStatus(state=RuntimeState.UNHEALTHY, reason="hostname unreachable")
        if health is Health.HEALTHY or metrics_available:
            return TunnelStatus(state=RuntimeState.RUNNING)
        return TunnelStatus(state=RuntimeState.STARTING)
    if service is ServiceState.ACTIVATING:
        return TunnelStatus(state=RuntimeState.STARTING)

    if not tunnel.enabled:
        return TunnelStatus(state=RuntimeState.STOPPED)
    if service is ServiceState.FAILED:
        return TunnelStatus(state=RuntimeState.ERROR, reason="service failed")
    if service is ServiceState.MISSING:
        return TunnelStatus(state=RuntimeState.ERROR, reason="service not installed")
    return TunnelStatus(state=RuntimeState.ERROR, reason="service not running")
