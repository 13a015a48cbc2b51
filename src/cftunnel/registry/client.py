"""Async client for the Cloudflare tunnel and DNS API."""

import asyncio
import base64
import binascii
import json
import secrets
from collections.abc import Callable
from types import TracebackType
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict

from ..common.exceptions import (
    NotFoundError,
    RateLimitedError,
    RegistryError,
    RemoteRejectedError,
    RemoteTransientError,
    UnauthorizedError,
)
from ..common.logging import get_logger
from ..config import DEFAULT_API_BASE, Settings
from ..state.models import Account, Credentials, Zone

logger = get_logger(__name__)

CNAME_SUFFIX = "cfargotunnel.com"
MAX_BACKOFF = 10.0


def tunnel_cname(remote_id: str) -> str:
    return f"{remote_id}.{CNAME_SUFFIX}"


class RemoteTunnel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    deleted_at: str | None = None


class DnsRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    name: str
    content: str
    type: str = "CNAME"


def _format_errors(errors: Any) -> str:
    if not isinstance(errors, list) or not errors:
        return "unknown error"
    return ", ".join(
        str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors
    )


class RegistryClient:
    """Typed access to zones, tunnels, DNS records and tunnel credentials.

    Rate-limited and transient failures are retried here with exponential
    backoff; every other failure is raised to the caller unchanged.
    """

    def __init__(
        self,
        api_token: str,
        account_id: str = "",
        *,
        base_url: str = DEFAULT_API_BASE,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.account_id = account_id
        self.max_retries = max_retries
        self.backoff = backoff
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def for_account(
        cls,
        account: Account,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "RegistryClient":
        return cls(
            account.api_token,
            account.account_id,
            base_url=settings.api_base,
            timeout=settings.api_timeout,
            max_retries=settings.max_retries,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # Account and zones --------------------------------------------------------

    async def verify_token(self) -> None:
        """Raises UnauthorizedError if the token is not active."""
        data = await self._request("GET", "/user/tokens/verify")
        status = (data.get("result") or {}).get("status")
        if status not in (None, "active"):
            raise UnauthorizedError(f"API token is {status}")

    async def list_zones(self) -> list[Zone]:
        return [Zone(id=z["id"], name=z["name"]) for z in await self._zones_raw()]

    async def discover_account_id(self) -> str:
        """Remote account id, taken from the first zone the token can see.

        Raises:
            RemoteRejectedError: If the token has access to no zones
        """
        zones = await self._zones_raw()
        for zone in zones:
            account_id = (zone.get("account") or {}).get("id")
            if account_id:
                return str(account_id)
        raise RemoteRejectedError(
            "No zones found for this token. Grant it Zone:Read and DNS:Edit on at least one zone."
        )

    async def _zones_raw(self) -> list[dict[str, Any]]:
        zones: list[dict[str, Any]] = []
        page = 1
        while True:
            data = await self._request(
                "GET", "/zones", params={"page": page, "per_page": 50, "status": "active"}
            )
            zones.extend(data.get("result") or [])
            total_pages = (data.get("result_info") or {}).get("total_pages", 1)
            if page >= total_pages:
                return zones
            page += 1

    # Tunnels --------------------------------------------------------------------

    async def list_tunnels(self) -> list[RemoteTunnel]:
        data = await self._request(
            "GET", self._tunnels_path(), params={"is_deleted": "false", "per_page": 100}
        )
        return [
            t for t in (RemoteTunnel.model_validate(raw) for raw in data.get("result") or [])
            if t.deleted_at is None
        ]

    async def get_tunnel_by_name(self, name: str) -> RemoteTunnel | None:
        data = await self._request(
            "GET", self._tunnels_path(), params={"name": name, "is_deleted": "false"}
        )
        for raw in data.get("result") or []:
            tunnel = RemoteTunnel.model_validate(raw)
            if tunnel.name == name and tunnel.deleted_at is None:
                return tunnel
        return None

    async def ensure_tunnel(
        self,
        name: str,
        load_credentials: Callable[[str], Credentials | None] | None = None,
    ) -> tuple[str, Credentials]:
        """Return the remote tunnel called ``name``, creating it if needed.

        An existing tunnel is reused together with its locally stored
        credentials; if those are gone they are fetched again from the API.
        """
        existing = await self.get_tunnel_by_name(name)
        if existing is not None:
            credentials = load_credentials(existing.id) if load_credentials else None
            if credentials is None:
                credentials = await self.get_tunnel_credentials(existing.id)
            logger.info("Reusing remote tunnel", name=name, remote_id=existing.id)
            return existing.id, credentials

        secret = base64.b64encode(secrets.token_bytes(32)).decode()
        data = await self._request(
            "POST",
            self._tunnels_path(),
            json={"name": name, "tunnel_secret": secret, "config_src": "local"},
        )
        tunnel = RemoteTunnel.model_validate(data.get("result") or {})
        logger.info("Created remote tunnel", name=name, remote_id=tunnel.id)
        return tunnel.id, Credentials(
            account_tag=self.account_id, tunnel_id=tunnel.id, tunnel_secret=secret
        )

    async def get_tunnel_credentials(self, remote_id: str) -> Credentials:
        """Re-issue credentials for an existing tunnel from its connector token."""
        data = await self._request("GET", f"{self._tunnels_path()}/{remote_id}/token")
        token = data.get("result")
        try:
            decoded = json.loads(base64.b64decode(str(token)))
            return Credentials(
                account_tag=decoded["a"], tunnel_id=decoded["t"], tunnel_secret=decoded["s"]
            )
        except (binascii.Error, ValueError, KeyError, TypeError) as e:
            raise RemoteRejectedError(f"Unexpected tunnel token format for {remote_id}") from e

    async def delete_tunnel(self, remote_id: str) -> bool:
        """Delete a remote tunnel. Returns False if it was already gone."""
        try:
            await self._request("DELETE", f"{self._tunnels_path()}/{remote_id}/connections")
        except NotFoundError:
            logger.debug("No connections to clean up", remote_id=remote_id)
        try:
            await self._request("DELETE", f"{self._tunnels_path()}/{remote_id}")
        except NotFoundError:
            logger.info("Remote tunnel already deleted", remote_id=remote_id)
            return False
        logger.info("Deleted remote tunnel", remote_id=remote_id)
        return True

    # DNS --------------------------------------------------------------------------

    async def get_dns_record(self, zone_id: str, hostname: str) -> DnsRecord | None:
        data = await self._request(
            "GET",
            f"/zones/{zone_id}/dns_records",
            params={"type": "CNAME", "name": hostname},
        )
        records = data.get("result") or []
        return DnsRecord.model_validate(records[0]) if records else None

    async def upsert_dns_record(self, zone_id: str, hostname: str, remote_id: str) -> str:
        """Point ``hostname`` at the tunnel. Returns created, updated or unchanged."""
        content = tunnel_cname(remote_id)
        existing = await self.get_dns_record(zone_id, hostname)
        if existing is not None and existing.content == content:
            logger.debug("DNS record already correct", hostname=hostname)
            return "unchanged"

        body = {"type": "CNAME", "name": hostname, "content": content, "proxied": True}
        if existing is not None:
            await self._request("PUT", f"/zones/{zone_id}/dns_records/{existing.id}", json=body)
            logger.info("Updated DNS record", hostname=hostname, previous=existing.content)
            return "updated"

        await self._request("POST", f"/zones/{zone_id}/dns_records", json=body)
        logger.info("Created DNS record", hostname=hostname)
        return "created"

    async def delete_dns_record(self, zone_id: str, hostname: str) -> bool:
        """Delete the CNAME for ``hostname``. Returns False if it was already absent."""
        try:
            existing = await self.get_dns_record(zone_id, hostname)
        except NotFoundError:
            logger.info("Zone no longer exists", zone_id=zone_id, hostname=hostname)
            return False
        if existing is None:
            logger.info("DNS record already absent", hostname=hostname)
            return False
        try:
            await self._request("DELETE", f"/zones/{zone_id}/dns_records/{existing.id}")
        except NotFoundError:
            return False
        logger.info("Deleted DNS record", hostname=hostname)
        return True

    # Transport ----------------------------------------------------------------------

    def _tunnels_path(self) -> str:
        if not self.account_id:
            raise RemoteRejectedError("No remote account id configured")
        return f"/accounts/{self.account_id}/cfd_tunnel"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        attempt = 0
        while True:
            try:
                response = await self._client.request(method, path, json=json, params=params)
                return self._unwrap(response)
            except httpx.TransportError as e:
                error: RegistryError = RemoteTransientError(f"{method} {path}: {e}")
            except (RateLimitedError, RemoteTransientError) as e:
                error = e

            if attempt >= self.max_retries:
                raise error
            delay = min(self.backoff * 2**attempt, MAX_BACKOFF)
            if isinstance(error, RateLimitedError) and error.retry_after is not None:
                delay = min(error.retry_after, MAX_BACKOFF)
            attempt += 1
            logger.warning(
                "Retrying Cloudflare API request",
                method=method,
                path=path,
                attempt=attempt,
                delay=delay,
                error=str(error),
            )
            await asyncio.sleep(delay)

    @staticmethod
    def _unwrap(response: httpx.Response) -> dict[str, Any]:
        status = response.status_code
        data: dict[str, Any] = {}
        if response.content and response.content.strip():
            try:
                parsed = response.json()
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                data = parsed
            elif response.is_success:
                raise RemoteTransientError(
                    f"Unparseable response from Cloudflare (HTTP {status})", status
                )

        message = _format_errors(data.get("errors")) if data else f"HTTP {status}"
        if status in (401, 403):
            raise UnauthorizedError(f"Cloudflare rejected the API token: {message}", status)
        if status == 404:
            raise NotFoundError(f"Not found: {message}", status)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitedError(
                f"Rate limited: {message}",
                status,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status >= 500:
            raise RemoteTransientError(f"Cloudflare API error: {message}", status)
        if not data:
            if response.is_success:
                return {"success": True, "result": None}
            raise RemoteRejectedError(f"Cloudflare API error: HTTP {status}", status)
        if not data.get("success", False):
            raise RemoteRejectedError(f"Cloudflare API error: {message}", status)
        return data
