"""Persisted state models: accounts, zones and tunnels.

All models are frozen. Mutating helpers return new instances, so a snapshot
handed to another component can never change underneath it.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..common.exceptions import (
    AccountNotFoundError,
    NotInitializedError,
    TunnelNotFoundError,
    ZoneNotFoundError,
)
from ..common.utils import metrics_port_for, remote_tunnel_name


class Zone(BaseModel):
    """A DNS zone available under an account (cached remote truth)."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)


class Account(BaseModel):
    """Remote credential scope."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    name: str = Field(min_length=1, description="Local account name")
    display_name: str = Field(default="", description="Human readable label")
    api_token: str = Field(min_length=1, repr=False)
    account_id: str = Field(min_length=1, description="Remote account identifier")
    zones: tuple[Zone, ...] = ()
    default_zone_id: str = ""

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.replace("-", "").replace("_", "").isalnum():
            raise ValueError(
                "Account name must contain only alphanumeric characters, hyphens, and underscores"
            )
        return v

    @property
    def default_zone(self) -> Zone | None:
        for zone in self.zones:
            if zone.id == self.default_zone_id:
                return zone
        return self.zones[0] if self.zones else None

    def zone(self, name: str | None = None) -> Zone:
        """Resolve a zone by name, or the default zone when ``name`` is None.

        Raises:
            ZoneNotFoundError: If the zone is not cached for this account
        """
        if name is None:
            zone = self.default_zone
            if zone is None:
                raise ZoneNotFoundError(f"Account '{self.name}' has no zones")
            return zone
        for zone in self.zones:
            if zone.name == name.lower().rstrip("."):
                return zone
        raise ZoneNotFoundError(
            f"Zone '{name}' not found for account '{self.name}'. "
            "Run `cftunnel zones --refresh` to update the zone list."
        )


class Credentials(BaseModel):
    """Secret cloudflared uses to authenticate as one remote tunnel.

    Serialized with the field names cloudflared reads from its
    ``credentials-file``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    account_tag: str = Field(alias="AccountTag")
    tunnel_id: str = Field(alias="TunnelID")
    tunnel_secret: str = Field(alias="TunnelSecret", repr=False)


class TunnelMode(str, Enum):
    PERSISTENT = "persistent"
    EPHEMERAL = "ephemeral"


class PendingStep(str, Enum):
    """Steps recorded as outstanding after a partial failure."""

    DNS = "dns"
    SERVICE = "service"
    DELETE = "delete"
    OLD_DNS = "old-dns"


class StaleDnsRecord(BaseModel):
    """A CNAME left in a zone the tunnel has moved away from."""

    model_config = ConfigDict(frozen=True)

    zone_id: str = Field(min_length=1)
    hostname: str = Field(min_length=1)


class Tunnel(BaseModel):
    """A named mapping from a public hostname to a local target."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    name: str = Field(min_length=1)
    account: str = Field(default="", description="Owning account name")
    target: str = Field(min_length=1, description="Service URL the daemon forwards to")
    zone_id: str = Field(min_length=1)
    zone_name: str = Field(min_length=1)
    hostname: str = Field(min_length=1)
    remote_id: str | None = Field(default=None, description="Provider tunnel id")
    enabled: bool = False
    auto_start: bool = False
    mode: TunnelMode = TunnelMode.PERSISTENT
    metrics_port: int | None = Field(default=None, ge=1, le=65535)
    pending: tuple[PendingStep, ...] = ()
    stale_dns: tuple[StaleDnsRecord, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        return (self.account, self.name)

    @property
    def remote_name(self) -> str:
        return remote_tunnel_name(self.name, self.account)

    @property
    def effective_metrics_port(self) -> int:
        return self.metrics_port or metrics_port_for(f"{self.account}/{self.name}")

    @property
    def metrics_url(self) -> str:
        return f"http://127.0.0.1:{self.effective_metrics_port}/metrics"

    @property
    def public_url(self) -> str:
        return f"https://{self.hostname}"

    def update(self, **changes: Any) -> "Tunnel":
        return self.model_copy(update=changes)

    def with_pending(self, *steps: PendingStep) -> "Tunnel":
        merged = tuple(dict.fromkeys((*self.pending, *steps)))
        return self.model_copy(update={"pending": merged})

    def without_pending(self, *steps: PendingStep) -> "Tunnel":
        return self.model_copy(
            update={"pending": tuple(p for p in self.pending if p not in steps)}
        )

    def with_stale_dns(self, zone_id: str, hostname: str) -> "Tunnel":
        """Remember a CNAME to delete later, unless it is the tunnel's live record."""
        if (zone_id, hostname) == (self.zone_id, self.hostname):
            return self
        record = StaleDnsRecord(zone_id=zone_id, hostname=hostname)
        stale = tuple(dict.fromkeys((*self.stale_dns, record)))
        return self.model_copy(update={"stale_dns": stale}).with_pending(PendingStep.OLD_DNS)

    def without_stale_dns(self, *records: StaleDnsRecord) -> "Tunnel":
        stale = tuple(r for r in self.stale_dns if r not in records)
        updated = self.model_copy(update={"stale_dns": stale})
        return updated if stale else updated.without_pending(PendingStep.OLD_DNS)


class StateSnapshot(BaseModel):
    """Everything the store persists, as one immutable value."""

    model_config = ConfigDict(frozen=True)

    accounts: tuple[Account, ...] = ()
    default_account: str | None = None
    tunnels: tuple[Tunnel, ...] = ()

    def account(self, name: str | None = None) -> Account:
        """Resolve an account by name, or the default account.

        Raises:
            NotInitializedError: If no account exists at all
            AccountNotFoundError: If ``name`` is unknown
        """
        if not self.accounts:
            raise NotInitializedError("cftunnel is not configured. Run `cftunnel init` first.")
        wanted = name or self.default_account
        for account in self.accounts:
            if account.name == wanted:
                return account
        if name is None:
            return self.accounts[0]
        raise AccountNotFoundError(
            f"Account '{name}' not found. Run `cftunnel account list` to see accounts."
        )

    def find_tunnel(self, name: str, account: str) -> Tunnel | None:
        for tunnel in self.tunnels:
            if tunnel.name == name and tunnel.account == account:
                return tunnel
        return None

    def get_tunnel(self, name: str, account: str) -> Tunnel:
        tunnel = self.find_tunnel(name, account)
        if tunnel is None:
            raise TunnelNotFoundError(
                f"Tunnel '{name}' not found for account '{account}'. "
                "Run `cftunnel list` to see available tunnels."
            )
        return tunnel

    def find_by_remote_id(self, remote_id: str) -> Tunnel | None:
        for tunnel in self.tunnels:
            if tunnel.remote_id == remote_id:
                return tunnel
        return None

    def tunnels_for(self, account: str) -> tuple[Tunnel, ...]:
        return tuple(t for t in self.tunnels if t.account == account)

    def with_tunnel(self, tunnel: Tunnel) -> "StateSnapshot":
        """Insert or replace a tunnel record (keyed by account and name)."""
        tunnels = list(self.tunnels)
        for index, existing in enumerate(tunnels):
            if existing.key == tunnel.key:
                tunnels[index] = tunnel
                break
        else:
            tunnels.append(tunnel)
        return self.model_copy(update={"tunnels": tuple(tunnels)})

    def without_tunnel(self, name: str, account: str) -> "StateSnapshot":
        return self.model_copy(
            update={
                "tunnels": tuple(t for t in self.tunnels if t.key != (account, name))
            }
        )

    def with_account(self, account: Account, make_default: bool = False) -> "StateSnapshot":
        """Insert or replace an account, keeping exactly one default."""
        accounts = [a for a in self.accounts if a.name != account.name]
        replaced = len(accounts) != len(self.accounts)
        if replaced:
            index = next(i for i, a in enumerate(self.accounts) if a.name == account.name)
            accounts.insert(index, account)
        else:
            accounts.append(account)
        default = self.default_account
        if make_default or default is None or default not in {a.name for a in accounts}:
            default = account.name
        return self.model_copy(update={"accounts": tuple(accounts), "default_account": default})

    def without_account(self, name: str) -> "StateSnapshot":
        """Remove an account and all of its local tunnel records."""
        self.account(name)
        accounts = tuple(a for a in self.accounts if a.name != name)
        default = self.default_account
        if default == name:
            default = accounts[0].name if accounts else None
        return self.model_copy(
            update={
                "accounts": accounts,
                "default_account": default,
                "tunnels": tuple(t for t in self.tunnels if t.account != name),
            }
        )

    def select_account(self, name: str) -> "StateSnapshot":
        self.account(name)
        return self.model_copy(update={"default_account": name})

    def set_default_zone(self, zone_name: str, account: str | None = None) -> "StateSnapshot":
        acct = self.account(account)
        zone = acct.zone(zone_name)
        return self.with_account(acct.model_copy(update={"default_zone_id": zone.id}))
