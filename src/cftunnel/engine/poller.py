"""Background status polling."""

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict

from ..common.exceptions import CfTunnelError
from ..common.logging import get_logger
from ..config import Settings
from ..daemon.metrics import MetricsHistory
from ..daemon.probe import DaemonProbe, Health
from ..service.base import ServiceState
from ..state.models import Tunnel, TunnelMode
from .operations import OperationEngine
from .status import RuntimeState, TunnelStatus, TunnelView, derive_status, transition_status

logger = get_logger(__name__)

Notifier = Callable[[str, str], Awaitable[bool]]


@dataclass(frozen=True)
class HealthEvent:
    tunnel: str
    previous: Health
    current: Health

    @property
    def title(self) -> str:
        if self.current is Health.HEALTHY:
            return f"Tunnel Up: {self.tunnel}"
        return f"Tunnel Down: {self.tunnel}"

    @property
    def message(self) -> str:
        if self.current is Health.HEALTHY:
            return "The tunnel is now reachable"
        return "The tunnel is no longer reachable"


class PollSnapshot(BaseModel):
    """Immutable result of one poll cycle."""

    model_config = ConfigDict(frozen=True)

    views: tuple[TunnelView, ...] = ()
    taken_at: datetime
    events: tuple[HealthEvent, ...] = ()
    error: str | None = None

    def view(self, name: str, account: str) -> TunnelView | None:
        for view in self.views:
            if view.key == (account, name):
                return view
        return None


class StatusPoller:
    """Refreshes every tunnel's status on an interval and publishes snapshots.

    Liveness and metrics are checked every ``status_interval``; the public
    hostname only every ``health_interval``. Tunnels with an operation in
    flight are not probed: their last view is carried over with the
    transition state.
    """

    def __init__(
        self,
        engine: OperationEngine,
        probe: DaemonProbe,
        settings: Settings,
        account: str | None = None,
        notifier: Notifier | None = None,
        include_ephemeral: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.probe = probe
        self.settings = settings
        self.account = account
        self.notifier = notifier
        self.include_ephemeral = include_ephemeral
        self._clock = clock
        self._views: dict[tuple[str, str], TunnelView] = {}
        self._ephemeral: list[Tunnel] = []
        self._ephemeral_checked_at: float | None = None
        self._subscribers: list[Callable[[PollSnapshot], None]] = []
        self._latest: PollSnapshot | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def latest(self) -> PollSnapshot | None:
        return self._latest

    def subscribe(self, callback: Callable[[PollSnapshot], None]) -> Callable[[], None]:
        """Register a callback for every published snapshot. Returns an unsubscribe function."""
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    # Lifecycle ---------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="status-poller")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                # one bad cycle must not end polling for the whole session
                logger.exception("Status poll failed")
            await asyncio.sleep(self.settings.status_interval)

    async def refresh_health(self) -> PollSnapshot:
        """Poll immediately, probing every hostname regardless of schedule."""
        return await self.poll_once(check_health=True)

    # Polling -----------------------------------------------------------------------------

    async def poll_once(self, check_health: bool | None = None) -> PollSnapshot:
        """Run one poll cycle and publish its snapshot.

        Args:
            check_health: True to probe every hostname, False to skip hostname
                probes, None to probe those whose health interval elapsed
        """
        try:
            snapshot = self.engine.snapshot()
            tunnels = snapshot.tunnels_for(snapshot.account(self.account).name)
        except CfTunnelError as e:
            logger.warning("Cannot load state for polling", error=str(e))
            result = PollSnapshot(taken_at=datetime.now(UTC), error=str(e))
            self._publish(result)
            return result

        now = self._clock()
        if self.include_ephemeral:
            await self._refresh_ephemeral(now)

        events: list[HealthEvent] = []
        polled = await asyncio.gather(
            *(self._poll_tunnel(t, now, check_health, events) for t in (*tunnels, *self._ephemeral))
        )
        self._views = {view.key: view for view in polled}

        result = PollSnapshot(views=tuple(polled), taken_at=datetime.now(UTC), events=tuple(events))
        for event in events:
            await self._notify(event)
        self._publish(result)
        return result

    async def _poll_tunnel(
        self,
        tunnel: Tunnel,
        now: float,
        check_health: bool | None,
        events: list[HealthEvent],
    ) -> TunnelView:
        previous = self._views.get(tunnel.key)
        operation = self.engine.operation_for(tunnel.key)
        if operation is not None:
            if previous is None:
                return TunnelView(
                    tunnel=tunnel, status=transition_status(operation), operation=operation
                )
            return previous.model_copy(
                update={
                    "tunnel": tunnel,
                    "status": transition_status(operation, previous.status),
                    "operation": operation,
                }
            )

        service: ServiceState | None = None
        if tunnel.mode is TunnelMode.PERSISTENT:
            try:
                service = await self.engine.adapter.status(tunnel)
            except CfTunnelError as e:
                logger.debug("Service status unavailable", tunnel=tunnel.name, error=str(e))
                return TunnelView(
                    tunnel=tunnel,
                    status=TunnelStatus(state=RuntimeState.ERROR, reason=str(e)),
                    history=previous.history if previous else MetricsHistory(),
                )

        live = service in (ServiceState.ACTIVE, ServiceState.ACTIVATING) or service is None
        metrics = await self.probe.metrics(tunnel) if live and tunnel.remote_id else None

        history = previous.history if previous else MetricsHistory()
        if metrics is not None:
            history = history.record(metrics.total_requests)

        health = previous.health if previous else Health.UNKNOWN
        checked_at = previous.health_checked_at if previous else None
        if not live or (service is None and metrics is None):
            health, checked_at = Health.UNKNOWN, None
        elif self._health_due(check_health, checked_at, now):
            new_health = await self.probe.health(tunnel)
            if {health, new_health} == {Health.HEALTHY, Health.UNREACHABLE}:
                events.append(HealthEvent(tunnel.name, health, new_health))
            health, checked_at = new_health, now

        return TunnelView(
            tunnel=tunnel,
            status=derive_status(tunnel, service, health, metrics is not None),
            service=service,
            health=health,
            metrics=metrics,
            history=history,
            health_checked_at=checked_at,
        )

    def _health_due(self, check_health: bool | None, checked_at: float | None, now: float) -> bool:
        if check_health is not None:
            return check_health
        return checked_at is None or now - checked_at >= self.settings.health_interval

    async def _refresh_ephemeral(self, now: float) -> None:
        checked = self._ephemeral_checked_at
        if checked is not None and now - checked < self.settings.health_interval:
            return
        self._ephemeral_checked_at = now
        try:
            self._ephemeral = await self.engine.list_ephemeral(self.account)
        except CfTunnelError as e:
            logger.warning("Cannot list ephemeral tunnels", error=str(e))

    async def _notify(self, event: HealthEvent) -> None:
        logger.info(
            "Health changed",
            tunnel=event.tunnel,
            previous=event.previous.value,
            current=event.current.value,
        )
        if self.notifier is not None:
            await self.notifier(event.title, event.message)

    def _publish(self, snapshot: PollSnapshot) -> None:
        self._latest = snapshot
        for callback in list(self._subscribers):
            callback(snapshot)
