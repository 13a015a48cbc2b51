"""Tests for health and metrics probes."""

import asyncio

import httpx
import pytest

from cftunnel.common.exceptions import DaemonUnreachableError
from cftunnel.daemon.probe import DaemonProbe, Health
from cftunnel.state.models import Tunnel


@pytest.fixture
def tunnel():
    return Tunnel(
        name="myapp",
        account="default",
        target="http://localhost:3000",
        zone_id="zone-1",
        zone_name="example.com",
        hostname="myapp.example.com",
        remote_id="remote-1",
        metrics_port=21001,
    )


def probe_with(handler):
    return DaemonProbe(transport=httpx.MockTransport(handler))


def check(probe, method, tunnel):
    async def scenario():
        async with probe:
            return await getattr(probe, method)(tunnel)

    return asyncio.run(scenario())


class TestHealth:
    @pytest.mark.parametrize("status", [200, 301, 404])
    def test_any_answer_below_500_is_healthy(self, tunnel, status):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(status)

        assert check(probe_with(handler), "health", tunnel) is Health.HEALTHY
        assert requests[0].method == "HEAD"
        assert requests[0].url.scheme == "https"
        assert requests[0].url.host == "myapp.example.com"

    def test_server_error_is_unreachable(self, tunnel):
        assert check(probe_with(lambda r: httpx.Response(530)), "health", tunnel) is Health.UNREACHABLE

    def test_connection_failure_is_unreachable(self, tunnel):
        def handler(request):
            raise httpx.ConnectError("Name or service not known")

        assert check(probe_with(handler), "health", tunnel) is Health.UNREACHABLE


class TestMetrics:
    def test_scrape(self, tunnel):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, text="cloudflared_tunnel_total_requests 12\n")

        snapshot = check(probe_with(handler), "metrics", tunnel)

        assert snapshot.total_requests == 12
        assert seen == ["http://127.0.0.1:21001/metrics"]

    def test_daemon_not_running(self, tunnel):
        def handler(request):
            raise httpx.ConnectError("Connection refused")

        assert check(probe_with(handler), "metrics", tunnel) is None

    def test_unexpected_status(self, tunnel):
        assert check(probe_with(lambda r: httpx.Response(404)), "metrics", tunnel) is None

    def test_unrelated_listener_is_not_metrics(self, tunnel):
        def handler(request):
            return httpx.Response(200, text="<html>not metrics</html>")

        assert check(probe_with(handler), "metrics", tunnel) is None


class TestScrape:
    def test_returns_snapshot(self, tunnel):
        def handler(request):
            return httpx.Response(200, text="cloudflared_tunnel_ha_connections 4\n")

        assert check(probe_with(handler), "scrape", tunnel).ha_connections == 4

    def test_connection_refused(self, tunnel):
        def handler(request):
            raise httpx.ConnectError("Connection refused")

        with pytest.raises(DaemonUnreachableError, match="No daemon answering on http://127.0.0.1:21001/metrics"):
            check(probe_with(handler), "scrape", tunnel)

    def test_error_status(self, tunnel):
        with pytest.raises(DaemonUnreachableError, match="HTTP 503"):
            check(probe_with(lambda r: httpx.Response(503)), "scrape", tunnel)

    def test_not_cloudflared_metrics(self, tunnel):
        def handler(request):
            return httpx.Response(200, text="go_goroutines 8\n")

        with pytest.raises(DaemonUnreachableError, match="did not serve cloudflared metrics") as excinfo:
            check(probe_with(handler), "scrape", tunnel)
        assert excinfo.value.kind == "daemon-unreachable"
