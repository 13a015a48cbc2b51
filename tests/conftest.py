"""Shared pytest fixtures for cftunnel tests."""

import asyncio
import base64
import itertools
import json
import re
from pathlib import Path
from typing import Any
from unittest.mock import patch

import httpx
import pytest

from cftunnel.common.process import CommandResult
from cftunnel.config import Settings
from cftunnel.daemon.metrics import MetricsSnapshot
from cftunnel.daemon.probe import Health
from cftunnel.engine.operations import OperationEngine
from cftunnel.registry.client import RegistryClient
from cftunnel.service.base import ServiceAdapter, ServiceState
from cftunnel.state.models import Account, StateSnapshot, Tunnel, Zone
from cftunnel.state.paths import Paths
from cftunnel.state.store import StateStore

API_TOKEN = "good-token"
ACCOUNT_ID = "acct-1"


class FakeCloudflare:
    """In-memory Cloudflare API served through ``httpx.MockTransport``.

    Failures can be injected per method and path fragment with ``fail``.
    """

    def __init__(self) -> None:
        self.api_token = API_TOKEN
        self.token_status = "active"
        self.zones: list[dict[str, Any]] = [
            {"id": "zone-1", "name": "example.com", "account": {"id": ACCOUNT_ID}},
            {"id": "zone-2", "name": "example.org", "account": {"id": ACCOUNT_ID}},
        ]
        self.tunnels: dict[str, dict[str, Any]] = {}
        self.dns: dict[str, dict[str, dict[str, Any]]] = {}
        self.requests: list[tuple[str, str]] = []
        self.created_tunnels = 0
        self._failures: list[list[Any]] = []
        self._ids = itertools.count(1)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def fail(self, method: str, fragment: str, status: int = 500, times: int = 1) -> None:
        self._failures.append([method, fragment, status, times])

    def records(self, zone_id: str) -> list[dict[str, Any]]:
        return list(self.dns.get(zone_id, {}).values())

    def record_for(self, hostname: str) -> dict[str, Any] | None:
        for records in self.dns.values():
            for record in records.values():
                if record["name"] == hostname:
                    return record
        return None

    # Routing ----------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path.split("/client/v4", 1)[-1]
        self.requests.append((method, path))

        for failure in self._failures:
            fail_method, fragment, status, times = failure
            if times > 0 and fail_method == method and fragment in path:
                failure[3] -= 1
                return httpx.Response(
                    status, json={"success": False, "errors": [{"message": "injected failure"}]}
                )

        if request.headers.get("Authorization") != f"Bearer {self.api_token}":
            return httpx.Response(
                401, json={"success": False, "errors": [{"code": 10000, "message": "Authentication error"}]}
            )

        params = dict(request.url.params)
        body = json.loads(request.content) if request.content else {}

        if path == "/user/tokens/verify":
            return self._ok({"status": self.token_status})
        if path == "/zones":
            return self._ok(self.zones, result_info={"page": 1, "total_pages": 1})

        match = re.fullmatch(r"/accounts/[^/]+/cfd_tunnel(?:/([^/]+))?(?:/(connections|token))?", path)
        if match:
            return self._tunnel_route(method, match.group(1), match.group(2), params, body)

        match = re.fullmatch(r"/zones/([^/]+)/dns_records(?:/([^/]+))?", path)
        if match:
            return self._dns_route(method, match.group(1), match.group(2), params, body)

        return self._not_found()

    def _tunnel_route(
        self, method: str, tunnel_id: str | None, sub: str | None, params: dict, body: dict
    ) -> httpx.Response:
        if tunnel_id is None:
            if method == "GET":
                found = list(self.tunnels.values())
                if "name" in params:
                    found = [t for t in found if t["name"] == params["name"]]
                return self._ok([{"id": t["id"], "name": t["name"], "deleted_at": None} for t in found])
            if method == "POST":
                tunnel_id = f"00000000-0000-0000-0000-{next(self._ids):012d}"
                self.tunnels[tunnel_id] = {"id": tunnel_id, "name": body["name"], "secret": body["tunnel_secret"]}
                self.created_tunnels += 1
                return self._ok({"id": tunnel_id, "name": body["name"]})

        tunnel = self.tunnels.get(tunnel_id or "")
        if tunnel is None:
            return self._not_found()
        if sub == "connections" and method == "DELETE":
            return self._ok(None)
        if sub == "token" and method == "GET":
            token = json.dumps({"a": ACCOUNT_ID, "t": tunnel["id"], "s": tunnel["secret"]})
            return self._ok(base64.b64encode(token.encode()).decode())
        if sub is None and method == "DELETE":
            del self.tunnels[tunnel["id"]]
            return self._ok({"id": tunnel["id"]})
        return self._not_found()

    def _dns_route(
        self, method: str, zone_id: str, record_id: str | None, params: dict, body: dict
    ) -> httpx.Response:
        if zone_id not in {z["id"] for z in self.zones}:
            return self._not_found()
        records = self.dns.setdefault(zone_id, {})
        if record_id is None:
            if method == "GET":
                found = [
                    r for r in records.values()
                    if r["name"] == params.get("name") and r["type"] == params.get("type", r["type"])
                ]
                return self._ok(found)
            if method == "POST":
                record_id = f"rec-{next(self._ids)}"
                records[record_id] = {"id": record_id, **body}
                return self._ok(records[record_id])

        if record_id not in records:
            return self._not_found()
        if method == "PUT":
            records[record_id] = {"id": record_id, **body}
            return self._ok(records[record_id])
        if method == "DELETE":
            del records[record_id]
            return self._ok({"id": record_id})
        return self._not_found()

    @staticmethod
    def _ok(result: Any, **extra: Any) -> httpx.Response:
        return httpx.Response(200, json={"success": True, "errors": [], "result": result, **extra})

    @staticmethod
    def _not_found() -> httpx.Response:
        return httpx.Response(404, json={"success": False, "errors": [{"code": 1003, "message": "Not found"}]})


class FakeServiceAdapter(ServiceAdapter):
    """Service backend that only records what it was asked to do.

    ``gate`` (an asyncio.Event) makes ``start`` and ``install`` wait until it
    is set; ``entered`` is set as soon as one of them is waiting.
    """

    platform_name = "fake"

    def __init__(self, paths: Paths):
        super().__init__(paths)
        self.states: dict[tuple[str, str], ServiceState] = {}
        self.auto_start: dict[tuple[str, str], bool] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, Exception] = {}
        self.gate: asyncio.Event | None = None
        self.entered: asyncio.Event | None = None
        self.hooks: dict[str, Any] = {}

    def descriptor_path(self, tunnel: Tunnel) -> Path:
        return self.paths.config_dir / "services" / f"{tunnel.account}-{tunnel.name}.service"

    async def _call(self, action: str, tunnel: Tunnel) -> None:
        self.calls.append((action, tunnel.name))
        if action in self.hooks:
            self.hooks[action]()
        if action in self.failures:
            raise self.failures[action]
        if self.gate is not None and action in ("start", "install"):
            if self.entered is not None:
                self.entered.set()
            await self.gate.wait()

    async def install(self, tunnel: Tunnel, config_path: Path) -> None:
        await self._call("install", tunnel)
        if self.states.get(tunnel.key, ServiceState.MISSING) is ServiceState.MISSING:
            self.states[tunnel.key] = ServiceState.INACTIVE
        self.auto_start[tunnel.key] = tunnel.auto_start

    async def remove(self, tunnel: Tunnel) -> None:
        await self._call("remove", tunnel)
        self.states.pop(tunnel.key, None)

    async def start(self, tunnel: Tunnel) -> None:
        await self._call("start", tunnel)
        self.states[tunnel.key] = ServiceState.ACTIVE

    async def stop(self, tunnel: Tunnel) -> None:
        await self._call("stop", tunnel)
        if tunnel.key in self.states:
            self.states[tunnel.key] = ServiceState.INACTIVE

    async def status(self, tunnel: Tunnel) -> ServiceState:
        return self.states.get(tunnel.key, ServiceState.MISSING)

    async def set_auto_start(self, tunnel: Tunnel, enabled: bool) -> None:
        await self._call("set_auto_start", tunnel)
        self.auto_start[tunnel.key] = enabled


class FakeProbe:
    """Probe returning canned health and metrics results."""

    def __init__(
        self,
        health: Health = Health.HEALTHY,
        metrics: MetricsSnapshot | None = None,
    ):
        self.health_result = health
        self.metrics_result = metrics if metrics is not None else MetricsSnapshot(total_requests=10)
        self.scrape_error: Exception | None = None
        self.health_calls = 0
        self.metrics_calls = 0
        self.scrape_calls = 0

    async def health(self, tunnel: Tunnel) -> Health:
        self.health_calls += 1
        return self.health_result

    async def metrics(self, tunnel: Tunnel) -> MetricsSnapshot | None:
        self.metrics_calls += 1
        return self.metrics_result

    async def scrape(self, tunnel: Tunnel) -> MetricsSnapshot:
        self.scrape_calls += 1
        if self.scrape_error is not None:
            raise self.scrape_error
        return self.metrics_result

    async def aclose(self) -> None:
        pass

    async def __aenter__(self) -> "FakeProbe":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        pass


class ScriptedCommands:
    """Stands in for ``run_command``: records every call and answers from a script.

    ``responses`` maps an argument prefix (as a tuple) to ``(returncode, stdout, stderr)``.
    Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.responses: dict[tuple[str, ...], tuple[int, str, str]] = {}

    def respond(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.responses[prefix] = (returncode, stdout, stderr)

    async def __call__(self, args, timeout=15.0) -> CommandResult:
        args = tuple(args)
        self.calls.append(args)
        best: tuple[str, ...] = ()
        for prefix in self.responses:
            if args[: len(prefix)] == prefix and len(prefix) > len(best):
                best = prefix
        returncode, stdout, stderr = self.responses.get(best, (0, "", ""))
        return CommandResult(args=args, returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    return tmp_path / "cftunnel"


@pytest.fixture
def settings(config_dir: Path) -> Settings:
    return Settings(config_dir=config_dir, max_retries=0, update_check=False)


@pytest.fixture
def paths(config_dir: Path) -> Paths:
    return Paths(config_dir)


@pytest.fixture
def account() -> Account:
    return Account(
        name="default",
        display_name="Default",
        api_token=API_TOKEN,
        account_id=ACCOUNT_ID,
        zones=(Zone(id="zone-1", name="example.com"), Zone(id="zone-2", name="example.org")),
        default_zone_id="zone-1",
    )


@pytest.fixture
def store(paths: Paths, account: Account) -> StateStore:
    """Store seeded with one account and no tunnels."""
    store = StateStore(paths)
    paths.ensure_dirs()
    store.save(StateSnapshot(accounts=(account,), default_account=account.name))
    return store


@pytest.fixture
def cloudflare() -> FakeCloudflare:
    return FakeCloudflare()


@pytest.fixture
def registry_factory(cloudflare: FakeCloudflare):
    def factory(api_token: str, account_id: str) -> RegistryClient:
        return RegistryClient(
            api_token,
            account_id,
            max_retries=0,
            backoff=0,
            transport=cloudflare.transport(),
        )

    return factory


@pytest.fixture
def adapter(paths: Paths) -> FakeServiceAdapter:
    return FakeServiceAdapter(paths)


@pytest.fixture
def engine(store: StateStore, adapter: FakeServiceAdapter, registry_factory, paths: Paths) -> OperationEngine:
    return OperationEngine(store, adapter, registry_factory, paths)


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def commands():
    scripted = ScriptedCommands()
    with (
        patch("cftunnel.service.base.run_command", new=scripted),
        patch("cftunnel.service.base.find_binary", return_value="/usr/local/bin/cloudflared"),
    ):
        yield scripted


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
