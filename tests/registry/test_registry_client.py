"""Tests for the Cloudflare API client."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from cftunnel.common.exceptions import (
    RateLimitedError,
    RemoteRejectedError,
    RemoteTransientError,
    UnauthorizedError,
)
from cftunnel.registry.client import RegistryClient, tunnel_cname

from conftest import ACCOUNT_ID, API_TOKEN


def client_for(handler, account_id=ACCOUNT_ID, **kwargs):
    kwargs.setdefault("max_retries", 0)
    return RegistryClient(API_TOKEN, account_id, transport=httpx.MockTransport(handler), **kwargs)


def run(client, coro_factory):
    async def scenario():
        async with client:
            return await coro_factory(client)

    return asyncio.run(scenario())


def ok(result):
    return httpx.Response(200, json={"success": True, "errors": [], "result": result})


class Responses:
    """Handler returning the given responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def sleep():
    with patch("cftunnel.registry.client.asyncio.sleep", new_callable=AsyncMock) as mocked:
        yield mocked


@pytest.fixture
def api(cloudflare):
    return RegistryClient(API_TOKEN, ACCOUNT_ID, max_retries=0, transport=cloudflare.transport())


class TestRetries:
    """Test retry and error classification."""

    def test_transient_error_is_retried(self, sleep):
        handler = Responses(httpx.Response(503, json={"success": False, "errors": []}), ok({"status": "active"}))

        run(client_for(handler, max_retries=2), lambda c: c.verify_token())

        assert handler.calls == 2
        sleep.assert_awaited_once_with(0.5)

    def test_backoff_grows(self, sleep):
        handler = Responses(
            httpx.Response(500),
            httpx.Response(500),
            ok({"status": "active"}),
        )

        run(client_for(handler, max_retries=3), lambda c: c.verify_token())

        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    def test_retry_after_is_honoured(self, sleep):
        handler = Responses(
            httpx.Response(429, headers={"Retry-After": "7"}, json={"success": False, "errors": []}),
            ok({"status": "active"}),
        )

        run(client_for(handler, max_retries=1), lambda c: c.verify_token())

        sleep.assert_awaited_once_with(7.0)

    def test_gives_up_after_max_retries(self, sleep):
        handler = Responses(*[httpx.Response(429) for _ in range(3)])

        with pytest.raises(RateLimitedError):
            run(client_for(handler, max_retries=2), lambda c: c.verify_token())

        assert handler.calls == 3

    def test_connection_errors_are_transient(self, sleep):
        handler = Responses(httpx.ConnectError("refused"), httpx.ConnectError("refused"))

        with pytest.raises(RemoteTransientError, match="refused"):
            run(client_for(handler, max_retries=1), lambda c: c.verify_token())

    def test_unauthorized_is_not_retried(self, sleep):
        handler = Responses(
            httpx.Response(401, json={"success": False, "errors": [{"message": "Authentication error"}]})
        )

        with pytest.raises(UnauthorizedError, match="Authentication error"):
            run(client_for(handler, max_retries=3), lambda c: c.verify_token())

        assert handler.calls == 1
        sleep.assert_not_awaited()

    def test_unparseable_success(self):
        handler = Responses(httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(RemoteTransientError, match="Unparseable"):
            run(client_for(handler), lambda c: c.verify_token())

    def test_rejected_request(self):
        handler = Responses(
            httpx.Response(400, json={"success": False, "errors": [{"message": "Record already exists"}]})
        )

        with pytest.raises(RemoteRejectedError, match="Record already exists") as info:
            run(client_for(handler), lambda c: c.verify_token())
        assert info.value.status_code == 400


class TestAccountAndZones:
    """Test token verification and zone discovery."""

    def test_verify_token(self, api):
        run(api, lambda c: c.verify_token())

    def test_inactive_token(self, api, cloudflare):
        cloudflare.token_status = "disabled"

        with pytest.raises(UnauthorizedError, match="disabled"):
            run(api, lambda c: c.verify_token())

    def test_list_zones(self, api):
        zones = run(api, lambda c: c.list_zones())

        assert [z.name for z in zones] == ["example.com", "example.org"]

    def test_discover_account_id(self, cloudflare):
        client = RegistryClient(API_TOKEN, transport=cloudflare.transport())

        assert run(client, lambda c: c.discover_account_id()) == ACCOUNT_ID

    def test_no_zones(self, api, cloudflare):
        cloudflare.zones = []

        with pytest.raises(RemoteRejectedError, match="No zones"):
            run(api, lambda c: c.discover_account_id())

    def test_zone_pagination(self):
        pages = {
            "1": {"result": [{"id": "z1", "name": "a.com"}], "result_info": {"total_pages": 2}},
            "2": {"result": [{"id": "z2", "name": "b.com"}], "result_info": {"total_pages": 2}},
        }

        def handler(request):
            page = pages[request.url.params["page"]]
            return httpx.Response(200, json={"success": True, "errors": [], **page})

        zones = run(client_for(handler), lambda c: c.list_zones())

        assert [z.id for z in zones] == ["z1", "z2"]

    def test_tunnel_calls_need_account_id(self):
        client = client_for(Responses(), account_id="")

        with pytest.raises(RemoteRejectedError, match="account id"):
            run(client, lambda c: c.list_tunnels())


class TestTunnels:
    """Test remote tunnel lifecycle."""

    def test_ensure_tunnel_creates_once(self, api, cloudflare):
        remote_id, credentials = run(api, lambda c: c.ensure_tunnel("cftunnel-myapp"))

        assert cloudflare.tunnels[remote_id]["name"] == "cftunnel-myapp"
        assert credentials.tunnel_id == remote_id
        assert credentials.account_tag == ACCOUNT_ID
        assert credentials.tunnel_secret == cloudflare.tunnels[remote_id]["secret"]

        stored = {remote_id: credentials}
        api2 = RegistryClient(API_TOKEN, ACCOUNT_ID, max_retries=0, transport=cloudflare.transport())
        again = run(api2, lambda c: c.ensure_tunnel("cftunnel-myapp", stored.get))

        assert again == (remote_id, credentials)
        assert cloudflare.created_tunnels == 1

    def test_missing_credentials_are_reissued(self, api, cloudflare):
        remote_id, credentials = run(api, lambda c: c.ensure_tunnel("cftunnel-myapp"))
        api2 = RegistryClient(API_TOKEN, ACCOUNT_ID, max_retries=0, transport=cloudflare.transport())

        again_id, reissued = run(api2, lambda c: c.ensure_tunnel("cftunnel-myapp", lambda _: None))

        assert again_id == remote_id
        assert reissued == credentials
        assert ("GET", f"/accounts/{ACCOUNT_ID}/cfd_tunnel/{remote_id}/token") in cloudflare.requests

    def test_bad_token_format(self):
        handler = Responses(ok("not base64 json!"))

        with pytest.raises(RemoteRejectedError, match="Unexpected tunnel token format"):
            run(client_for(handler), lambda c: c.get_tunnel_credentials("r-1"))

    def test_list_tunnels_skips_deleted(self):
        handler = Responses(
            ok(
                [
                    {"id": "a", "name": "cftunnel-a", "deleted_at": None},
                    {"id": "b", "name": "cftunnel-b", "deleted_at": "2024-01-01T00:00:00Z"},
                ]
            )
        )

        tunnels = run(client_for(handler), lambda c: c.list_tunnels())

        assert [t.id for t in tunnels] == ["a"]

    def test_delete_tunnel(self, cloudflare):
        async def scenario():
            async with RegistryClient(API_TOKEN, ACCOUNT_ID, max_retries=0, transport=cloudflare.transport()) as c:
                remote_id, _ = await c.ensure_tunnel("cftunnel-myapp")
                return await c.delete_tunnel(remote_id), await c.delete_tunnel(remote_id)

        assert asyncio.run(scenario()) == (True, False)
        assert cloudflare.tunnels == {}


class TestDnsRecords:
    """Test CNAME management."""

    def test_upsert_created_unchanged_updated(self, cloudflare):
        async def scenario():
            async with RegistryClient(API_TOKEN, ACCOUNT_ID, max_retries=0, transport=cloudflare.transport()) as c:
                first = await c.upsert_dns_record("zone-1", "myapp.example.com", "r-1")
                second = await c.upsert_dns_record("zone-1", "myapp.example.com", "r-1")
                third = await c.upsert_dns_record("zone-1", "myapp.example.com", "r-2")
                return first, second, third

        assert asyncio.run(scenario()) == ("created", "unchanged", "updated")
        record = cloudflare.record_for("myapp.example.com")
        assert record["content"] == tunnel_cname("r-2") == "r-2.cfargotunnel.com"
        assert record["proxied"] is True
        assert len(cloudflare.records("zone-1")) == 1

    def test_delete_record(self, cloudflare):
        async def scenario():
            async with RegistryClient(API_TOKEN, ACCOUNT_ID, max_retries=0, transport=cloudflare.transport()) as c:
                await c.upsert_dns_record("zone-1", "myapp.example.com", "r-1")
                return (
                    await c.delete_dns_record("zone-1", "myapp.example.com"),
                    await c.delete_dns_record("zone-1", "myapp.example.com"),
                )

        assert asyncio.run(scenario()) == (True, False)

    def test_delete_record_in_vanished_zone(self, api):
        assert run(api, lambda c: c.delete_dns_record("zone-9", "myapp.example.com")) is False
