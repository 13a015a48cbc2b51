"""Health and metrics probes for running tunnels."""

from enum import Enum
from types import TracebackType

import httpx

from ..common.exceptions import DaemonUnreachableError
from ..common.logging import get_logger
from ..state.models import Tunnel
from .metrics import MetricsSnapshot, parse_prometheus

logger = get_logger(__name__)


class Health(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNREACHABLE = "unreachable"


class DaemonProbe:
    """Checks a tunnel from the outside (public hostname) and the inside (metrics).

    Failures are results, not errors: ``health`` reports UNREACHABLE and
    ``metrics`` returns None. ``scrape`` is the strict form of ``metrics``
    for callers that need to know why the daemon did not answer.
    """

    def __init__(
        self,
        timeout: float = 5.0,
        metrics_timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        # the edge answers with its own certificate; we only care that it answers
        self._health_client = httpx.AsyncClient(
            timeout=timeout, verify=False, follow_redirects=False, transport=transport
        )
        self._metrics_client = httpx.AsyncClient(timeout=metrics_timeout, transport=transport)

    async def health(self, tunnel: Tunnel) -> Health:
        if not tunnel.hostname or " " in tunnel.hostname:
            return Health.UNKNOWN
        try:
            response = await self._health_client.head(tunnel.public_url)
        except httpx.HTTPError as e:
            logger.debug("Health probe failed", tunnel=tunnel.name, error=str(e))
            return Health.UNREACHABLE
        # 4xx still proves the edge routed the request through the tunnel
        if response.status_code >= 500:
            logger.debug("Health probe got server error", tunnel=tunnel.name, status=response.status_code)
            return Health.UNREACHABLE
        return Health.HEALTHY

    async def scrape(self, tunnel: Tunnel) -> MetricsSnapshot:
        """Read the daemon's metrics endpoint.

        Raises:
            DaemonUnreachableError: the metrics port did not answer with
                cloudflared metrics
        """
        url = tunnel.metrics_url
        try:
            response = await self._metrics_client.get(url)
        except httpx.HTTPError as e:
            raise DaemonUnreachableError(f"No daemon answering on {url}: {e}") from e
        if response.status_code != 200:
            raise DaemonUnreachableError(f"{url} answered with HTTP {response.status_code}")
        snapshot = parse_prometheus(response.text)
        if snapshot is None:
            raise DaemonUnreachableError(f"{url} did not serve cloudflared metrics")
        return snapshot

    async def metrics(self, tunnel: Tunnel) -> MetricsSnapshot | None:
        try:
            return await self.scrape(tunnel)
        except DaemonUnreachableError as e:
            logger.debug("Metrics unavailable", tunnel=tunnel.name, error=str(e))
            return None

    async def aclose(self) -> None:
        await self._health_client.aclose()
        await self._metrics_client.aclose()

    async def __aenter__(self) -> "DaemonProbe":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()
