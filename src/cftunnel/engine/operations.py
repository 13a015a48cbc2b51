"""Multi-step tunnel operations across the registry, the OS service and the store."""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, TypeVar

from ..common.exceptions import (
    CfTunnelError,
    LocalStoreCorruptError,
    NotInitializedError,
    OperationBusyError,
    OperationCancelledError,
    OperationFailed,
    TunnelExistsError,
    TunnelNotFoundError,
    ValidationError,
)
from ..common.logging import get_logger
from ..common.utils import (
    REMOTE_NAME_PREFIX,
    build_hostname,
    mask_sensitive_data,
    normalize_target,
    split_subdomain,
)
from ..daemon.config import read_ingress, write_daemon_config
from ..registry.client import RegistryClient
from ..service.base import ServiceAdapter
from ..state.models import (
    Account,
    PendingStep,
    StaleDnsRecord,
    StateSnapshot,
    Tunnel,
    TunnelMode,
    Zone,
)
from ..state.paths import Paths
from ..state.store import StateStore

logger = get_logger(__name__)

T = TypeVar("T")

RegistryFactory = Callable[[str, str], RegistryClient]


class CancelToken:
    """Cooperative cancellation flag checked between operation steps."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


@dataclass(frozen=True)
class Step:
    name: str
    action: Callable[[], Awaitable[Any]]
    required: bool = True


@dataclass(frozen=True)
class OperationResult:
    operation: str
    tunnel: Tunnel | None
    completed: tuple[str, ...] = ()


@dataclass(frozen=True)
class StepOutcome:
    step: str
    ok: bool
    detail: str = ""
    error: BaseException | None = field(default=None, compare=False)


@dataclass(frozen=True)
class DeleteReport:
    """Outcome of every teardown step of a delete, successful or not."""

    tunnel: str
    outcomes: tuple[StepOutcome, ...]

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def failures(self) -> tuple[StepOutcome, ...]:
        return tuple(o for o in self.outcomes if not o.ok)


class _Interrupted(Exception):
    """The calling task was cancelled while a step was in flight."""

    def __init__(self, succeeded: bool):
        super().__init__("step interrupted")
        self.succeeded = succeeded


async def _shielded(action: Callable[[], Awaitable[T]]) -> T:
    """Await ``action`` to completion even if the calling task is cancelled.

    A cancelled caller still waits for the step to finish, then gets
    ``_Interrupted`` telling it whether the step succeeded.
    """
    task = asyncio.ensure_future(action())
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        try:
            await task
        except Exception as e:
            logger.warning("Interrupted step failed", error=str(e))
            raise _Interrupted(False) from e
        raise _Interrupted(True) from None


def _match_zone(hostname: str, zones: Sequence[Zone]) -> Zone | None:
    matches = [z for z in zones if hostname.endswith(f".{z.name}")]
    return max(matches, key=lambda z: len(z.name)) if matches else None


class OperationEngine:
    """Runs tunnel operations as ordered steps and keeps the store in sync.

    Each step persists its own effect as soon as it succeeds, so after any
    failure or cancellation the store describes exactly the steps that
    completed. At most one operation runs per tunnel; the busy map is also
    read by the status poller.
    """

    def __init__(
        self,
        store: StateStore,
        adapter: ServiceAdapter,
        registry_factory: RegistryFactory,
        paths: Paths,
    ):
        self.store = store
        self.adapter = adapter
        self.paths = paths
        self._registry_factory = registry_factory
        self._busy: dict[tuple[str, str], str] = {}

    # Busy set ------------------------------------------------------------------

    @property
    def in_flight(self) -> Mapping[tuple[str, str], str]:
        """Read-only map of ``(account, name)`` to the running operation."""
        return MappingProxyType(self._busy)

    def operation_for(self, key: tuple[str, str]) -> str | None:
        return self._busy.get(key)

    @contextlib.contextmanager
    def begin(self, name: str, account: str, operation: str) -> Iterator[None]:
        """Claim a tunnel for ``operation``.

        Raises:
            OperationBusyError: If another operation holds the tunnel
        """
        key = (account, name)
        running = self._busy.get(key)
        if running is not None:
            raise OperationBusyError(name, running)
        self._busy[key] = operation
        try:
            yield
        finally:
            del self._busy[key]

    # Store access ---------------------------------------------------------------

    def snapshot(self) -> StateSnapshot:
        return self.store.load()

    def registry_for(self, account: Account) -> RegistryClient:
        return self._registry_factory(account.api_token, account.account_id)

    def _commit(self, change: Callable[[StateSnapshot], StateSnapshot]) -> StateSnapshot:
        # applied to the latest snapshot so commits for other tunnels are kept
        updated = change(self.store.load())
        self.store.save(updated)
        return updated

    def _save_tunnel(self, tunnel: Tunnel) -> Tunnel:
        self._commit(lambda s: s.with_tunnel(tunnel))
        return tunnel

    def _resolve(self, name: str, account: str | None) -> tuple[Account, Tunnel]:
        snapshot = self.snapshot()
        acct = snapshot.account(account)
        return acct, snapshot.get_tunnel(name, acct.name)

    def _config_path(self, tunnel: Tunnel) -> Path:
        return self.paths.daemon_config(tunnel.account, tunnel.name)

    def _write_config(self, tunnel: Tunnel) -> Path:
        if not tunnel.remote_id:
            raise ValidationError(f"Tunnel '{tunnel.name}' has not been created remotely yet")
        return write_daemon_config(
            self._config_path(tunnel),
            tunnel,
            self.paths.credentials(tunnel.remote_id),
        )

    async def _ensure_remote(self, registry: RegistryClient, tunnel: Tunnel) -> Tunnel:
        if tunnel.remote_id:
            if self.store.read_credentials(tunnel.remote_id) is None:
                logger.info("Re-issuing missing credentials", tunnel=tunnel.name)
                self.store.write_credentials(await registry.get_tunnel_credentials(tunnel.remote_id))
            return tunnel
        remote_id, credentials = await registry.ensure_tunnel(
            tunnel.remote_name, self.store.read_credentials
        )
        self.store.write_credentials(credentials)
        return tunnel.update(remote_id=remote_id)

    # Step runner ------------------------------------------------------------------

    async def _run_steps(
        self,
        operation: str,
        tunnel_name: str,
        steps: Sequence[Step],
        token: CancelToken | None = None,
    ) -> tuple[str, ...]:
        completed: list[str] = []
        for step in steps:
            if token is not None and token.cancelled:
                logger.info(
                    "Operation cancelled", operation=operation, tunnel=tunnel_name, before=step.name
                )
                raise OperationCancelledError(operation, tunnel_name, completed)

            logger.debug("Running step", operation=operation, tunnel=tunnel_name, step=step.name)
            try:
                await _shielded(step.action)
            except _Interrupted as interrupted:
                if interrupted.succeeded:
                    completed.append(step.name)
                raise OperationCancelledError(operation, tunnel_name, completed) from None
            except Exception as e:
                if not step.required:
                    logger.warning(
                        "Optional step failed",
                        operation=operation,
                        tunnel=tunnel_name,
                        step=step.name,
                        error=str(e),
                    )
                    continue
                logger.error(
                    "Step failed",
                    operation=operation,
                    tunnel=tunnel_name,
                    step=step.name,
                    error=str(e),
                    completed=completed,
                )
                raise OperationFailed(operation, tunnel_name, step.name, e, completed) from e
            completed.append(step.name)

        logger.info("Operation completed", operation=operation, tunnel=tunnel_name, steps=completed)
        return tuple(completed)

    def _start_steps(
        self, registry: RegistryClient, get: Callable[[], Tunnel], put: Callable[[Tunnel], None]
    ) -> list[Step]:
        """The authoritative start sequence shared by start and restart."""

        async def ensure_tunnel() -> None:
            tunnel = get()
            ensured = await self._ensure_remote(registry, tunnel)
            if ensured is not tunnel:
                put(self._save_tunnel(ensured))

        async def upsert_dns() -> None:
            tunnel = get()
            await registry.upsert_dns_record(tunnel.zone_id, tunnel.hostname, tunnel.remote_id or "")
            if PendingStep.DNS in tunnel.pending:
                put(self._save_tunnel(tunnel.without_pending(PendingStep.DNS)))

        async def write_config() -> None:
            self._write_config(get())

        async def install_service() -> None:
            tunnel = get()
            await self.adapter.install(tunnel, self._config_path(tunnel))
            if PendingStep.SERVICE in tunnel.pending:
                put(self._save_tunnel(tunnel.without_pending(PendingStep.SERVICE)))

        async def start_service() -> None:
            tunnel = get()
            await self.adapter.start(tunnel)
            if not tunnel.enabled:
                put(self._save_tunnel(tunnel.update(enabled=True)))

        return [
            Step("ensure_tunnel", ensure_tunnel),
            Step("upsert_dns", upsert_dns),
            Step("write_config", write_config),
            Step("install_service", install_service),
            Step("start_service", start_service),
        ]

    def _stale_dns_step(
        self,
        registry: RegistryClient,
        get: Callable[[], Tunnel],
        put: Callable[[Tunnel], None],
        required: bool = True,
    ) -> Step:
        """Delete CNAMEs left behind by earlier zone moves, forgetting each once gone."""

        async def delete_old_dns() -> None:
            for record in get().stale_dns:
                await registry.delete_dns_record(record.zone_id, record.hostname)
                put(self._save_tunnel(get().without_stale_dns(record)))

        return Step("delete_old_dns", delete_old_dns, required=required)

    # Accounts -----------------------------------------------------------------------

    async def register_account(
        self, api_token: str, name: str = "default", display_name: str = ""
    ) -> Account:
        """Verify a token, discover its account and zones, and save the account.

        The new account becomes the default.

        Raises:
            UnauthorizedError: If the token is rejected
            RemoteRejectedError: If the token can see no zones
        """
        async with self._registry_factory(api_token, "") as registry:
            await registry.verify_token()
            account_id = await registry.discover_account_id()
            zones = await registry.list_zones()

        try:
            previous = self.snapshot()
        except NotInitializedError:
            previous = StateSnapshot()
        existing = next((a for a in previous.accounts if a.name == name), None)
        default_zone_id = existing.default_zone_id if existing else ""
        if default_zone_id not in {z.id for z in zones}:
            default_zone_id = zones[0].id if zones else ""

        account = Account(
            name=name,
            display_name=display_name or name,
            api_token=api_token,
            account_id=account_id,
            zones=tuple(zones),
            default_zone_id=default_zone_id,
        )
        self.paths.ensure_dirs()
        self.store.save(previous.with_account(account, make_default=True))
        logger.info(
            "Account registered",
            account=name,
            zones=len(zones),
            api_token=mask_sensitive_data(api_token),
        )
        return account

    async def refresh_zones(self, account: str | None = None) -> Account:
        acct = self.snapshot().account(account)
        async with self.registry_for(acct) as registry:
            zones = await registry.list_zones()
        default_zone_id = acct.default_zone_id
        if default_zone_id not in {z.id for z in zones}:
            default_zone_id = zones[0].id if zones else ""
        updated = acct.model_copy(update={"zones": tuple(zones), "default_zone_id": default_zone_id})
        self._commit(lambda s: s.with_account(updated))
        logger.info("Zones refreshed", account=acct.name, zones=len(zones))
        return updated

    def select_account(self, name: str) -> StateSnapshot:
        return self._commit(lambda s: s.select_account(name))

    def set_default_zone(self, zone_name: str, account: str | None = None) -> StateSnapshot:
        return self._commit(lambda s: s.set_default_zone(zone_name, account))

    async def purge_account(
        self, name: str, token: CancelToken | None = None
    ) -> list[DeleteReport]:
        """Delete every tunnel of an account, then the account itself.

        Tunnel deletion is best effort: failures are reported, and the
        account's local records are dropped regardless.

        Raises:
            ValidationError: If ``name`` is the only account
        """
        snapshot = self.snapshot()
        acct = snapshot.account(name)
        if len(snapshot.accounts) == 1:
            raise ValidationError(
                f"Cannot remove '{name}': it is the only account. Use `cftunnel reset` instead."
            )

        reports = await self._delete_all(snapshot.tunnels_for(acct.name), token)
        self._commit(lambda s: s.without_account(acct.name))
        logger.info("Account removed", account=acct.name)
        return reports

    async def reset_all(self, token: CancelToken | None = None) -> list[DeleteReport]:
        """Tear down every tunnel of every account and wipe local state.

        A corrupt or missing store skips remote cleanup but is still wiped.
        """
        reports: list[DeleteReport] = []
        try:
            snapshot = self.snapshot()
        except (NotInitializedError, LocalStoreCorruptError) as e:
            logger.warning("Skipping remote cleanup", reason=str(e))
        else:
            reports = await self._delete_all(snapshot.tunnels, token)
        self.store.reset()
        return reports

    async def _delete_all(
        self, tunnels: Sequence[Tunnel], token: CancelToken | None
    ) -> list[DeleteReport]:
        reports = []
        for tunnel in tunnels:
            try:
                reports.append(await self.delete(tunnel.name, tunnel.account, token))
            except OperationFailed as e:
                if isinstance(e.report, DeleteReport):
                    reports.append(e.report)
                else:
                    reports.append(
                        DeleteReport(tunnel.name, (StepOutcome(e.step, False, str(e.cause), e.cause),))
                    )
        return reports

    # Tunnel operations ----------------------------------------------------------------

    async def add(
        self,
        name: str,
        target: str,
        zone: str | None = None,
        start: bool = False,
        account: str | None = None,
        auto_start: bool = False,
        token: CancelToken | None = None,
    ) -> OperationResult:
        """Create a managed tunnel.

        Re-running add with the same inputs resumes an add that failed part
        way instead of failing.

        Args:
            name: Subdomain, or a full hostname under the zone
            target: Local address (``localhost:3000``) or URL
            zone: Zone name, defaults to the account's default zone
            start: Start the service once installed
            account: Account name, defaults to the default account
            auto_start: Start the service at login
            token: Cancellation token checked between steps

        Raises:
            TunnelExistsError: If a different tunnel with this name exists
            OperationFailed: If a step fails; completed steps are persisted
        """
        snapshot = self.snapshot()
        acct = snapshot.account(account)
        zone_obj = acct.zone(zone)
        subdomain = split_subdomain(name, zone_obj.name)
        hostname = f"{subdomain}.{zone_obj.name}"
        target = normalize_target(target)

        with self.begin(subdomain, acct.name, "add"):
            existing = self.snapshot().find_tunnel(subdomain, acct.name)
            if existing is not None:
                if PendingStep.DELETE in existing.pending:
                    raise TunnelExistsError(
                        f"Tunnel '{subdomain}' is being deleted. Run `cftunnel delete {subdomain}` first."
                    )
                if (existing.target, existing.zone_id, existing.hostname) != (
                    target,
                    zone_obj.id,
                    hostname,
                ):
                    raise TunnelExistsError(
                        f"Tunnel '{subdomain}' already exists ({existing.hostname} -> {existing.target}). "
                        "Use `cftunnel edit` to change it."
                    )
                logger.info("Resuming add", tunnel=subdomain, pending=[p.value for p in existing.pending])

            tunnel = existing or Tunnel(
                name=subdomain,
                account=acct.name,
                target=target,
                zone_id=zone_obj.id,
                zone_name=zone_obj.name,
                hostname=hostname,
                auto_start=auto_start,
                pending=(PendingStep.DNS, PendingStep.SERVICE),
            )

            def get() -> Tunnel:
                return tunnel

            def put(updated: Tunnel) -> None:
                nonlocal tunnel
                tunnel = updated

            async with self.registry_for(acct) as registry:
                _, upsert, write, install, start_service = self._start_steps(registry, get, put)

                async def ensure_tunnel() -> None:
                    put(await self._ensure_remote(registry, tunnel))

                async def persist() -> None:
                    put(self._save_tunnel(tunnel))

                steps = [Step("ensure_tunnel", ensure_tunnel), Step("persist", persist), upsert, write, install]
                if start:
                    steps.append(start_service)
                completed = await self._run_steps("add", subdomain, steps, token)

        return OperationResult("add", tunnel, completed)

    async def start(
        self, name: str, account: str | None = None, token: CancelToken | None = None
    ) -> OperationResult:
        """Start a tunnel, re-asserting DNS, config and service on the way.

        Raises:
            OperationFailed: If a step fails; completed steps are persisted
        """
        acct, tunnel = self._resolve(name, account)
        self._refuse_if_deleting(tunnel)
        with self.begin(tunnel.name, acct.name, "start"):
            current = self.snapshot().get_tunnel(tunnel.name, acct.name)

            def get() -> Tunnel:
                return current

            def put(updated: Tunnel) -> None:
                nonlocal current
                current = updated

            async with self.registry_for(acct) as registry:
                steps = self._start_steps(registry, get, put)
                if current.stale_dns:
                    steps.insert(2, self._stale_dns_step(registry, get, put, required=False))
                completed = await self._run_steps("start", tunnel.name, steps, token)
        return OperationResult("start", current, completed)

    async def stop(
        self, name: str, account: str | None = None, token: CancelToken | None = None
    ) -> OperationResult:
        """Stop a tunnel's service. The remote tunnel and DNS record are kept."""
        acct, tunnel = self._resolve(name, account)
        with self.begin(tunnel.name, acct.name, "stop"):
            current = self.snapshot().get_tunnel(tunnel.name, acct.name)

            async def stop_service() -> None:
                nonlocal current
                await self.adapter.stop(current)
                if current.enabled:
                    current = self._save_tunnel(current.update(enabled=False))

            completed = await self._run_steps(
                "stop", tunnel.name, [Step("stop_service", stop_service)], token
            )
        return OperationResult("stop", current, completed)

    async def restart(
        self, name: str, account: str | None = None, token: CancelToken | None = None
    ) -> OperationResult:
        """Stop (ignoring failures) and run the full start sequence."""
        acct, tunnel = self._resolve(name, account)
        self._refuse_if_deleting(tunnel)
        with self.begin(tunnel.name, acct.name, "restart"):
            current = self.snapshot().get_tunnel(tunnel.name, acct.name)

            def get() -> Tunnel:
                return current

            def put(updated: Tunnel) -> None:
                nonlocal current
                current = updated

            async def stop_service() -> None:
                await self.adapter.stop(current)

            async with self.registry_for(acct) as registry:
                steps = [
                    Step("stop_service", stop_service, required=False),
                    *self._start_steps(registry, get, put),
                ]
                if current.stale_dns:
                    steps.insert(3, self._stale_dns_step(registry, get, put, required=False))
                completed = await self._run_steps("restart", tunnel.name, steps, token)
        return OperationResult("restart", current, completed)

    async def delete(
        self, name: str, account: str | None = None, token: CancelToken | None = None
    ) -> DeleteReport:
        """Tear a tunnel down everywhere and forget it.

        Every teardown step is attempted even after one fails. The local
        record is removed only when all of them succeeded (absent counts as
        success); otherwise it stays, flagged as pending deletion.

        Raises:
            OperationFailed: If any step failed, with the DeleteReport attached
        """
        acct, tunnel = self._resolve(name, account)
        with self.begin(tunnel.name, acct.name, "delete"):
            tunnel = self._save_tunnel(
                self.snapshot().get_tunnel(tunnel.name, acct.name).with_pending(PendingStep.DELETE)
            )
            async with self.registry_for(acct) as registry:

                async def delete_dns() -> str:
                    if not tunnel.remote_id:
                        return "never created"
                    removed = await registry.delete_dns_record(tunnel.zone_id, tunnel.hostname)
                    return "deleted" if removed else "already absent"

                async def delete_old_dns() -> str:
                    for record in tunnel.stale_dns:
                        await registry.delete_dns_record(record.zone_id, record.hostname)
                    return ", ".join(r.hostname for r in tunnel.stale_dns)

                async def delete_tunnel() -> str:
                    if not tunnel.remote_id:
                        return "never created"
                    removed = await registry.delete_tunnel(tunnel.remote_id)
                    return "deleted" if removed else "already absent"

                async def stop_service() -> None:
                    await self.adapter.stop(tunnel)

                async def remove_service() -> None:
                    await self.adapter.remove(tunnel)

                steps = [
                    Step("stop_service", stop_service),
                    Step("remove_service", remove_service),
                    Step("delete_dns", delete_dns),
                ]
                if tunnel.stale_dns:
                    steps.append(Step("delete_old_dns", delete_old_dns))
                steps.append(Step("delete_tunnel", delete_tunnel))
                report = await self._run_all("delete", tunnel.name, steps, token)

            if not report.ok:
                first = report.failures[0]
                raise OperationFailed(
                    "delete",
                    tunnel.name,
                    first.step,
                    first.error or CfTunnelError(first.detail),
                    [o.step for o in report.outcomes if o.ok],
                    report=report,
                )

            self._commit(lambda s: s.without_tunnel(tunnel.name, acct.name))
            self._remove_local_files(tunnel)
        logger.info("Tunnel deleted", tunnel=tunnel.name, account=acct.name)
        return report

    async def _run_all(
        self,
        operation: str,
        tunnel_name: str,
        steps: Sequence[Step],
        token: CancelToken | None,
    ) -> DeleteReport:
        outcomes: list[StepOutcome] = []
        for step in steps:
            if token is not None and token.cancelled:
                raise OperationCancelledError(
                    operation, tunnel_name, [o.step for o in outcomes if o.ok]
                )
            try:
                detail = await _shielded(step.action)
            except _Interrupted as interrupted:
                outcomes.append(StepOutcome(step.name, interrupted.succeeded))
                raise OperationCancelledError(
                    operation, tunnel_name, [o.step for o in outcomes if o.ok]
                ) from None
            except Exception as e:
                logger.warning(
                    "Teardown step failed",
                    operation=operation,
                    tunnel=tunnel_name,
                    step=step.name,
                    error=str(e),
                )
                outcomes.append(StepOutcome(step.name, False, str(e), e))
            else:
                outcomes.append(StepOutcome(step.name, True, detail or ""))
        return DeleteReport(tunnel_name, tuple(outcomes))

    def _remove_local_files(self, tunnel: Tunnel) -> None:
        if tunnel.remote_id:
            self.store.remove_credentials(tunnel.remote_id)
        for path in (self._config_path(tunnel), self.paths.log(tunnel.account, tunnel.name)):
            with contextlib.suppress(FileNotFoundError):
                path.unlink()

    async def edit(
        self,
        name: str,
        target: str | None = None,
        zone: str | None = None,
        account: str | None = None,
        token: CancelToken | None = None,
    ) -> OperationResult:
        """Change a tunnel's target and/or zone. Name and remote id never change.

        On a zone change the new DNS record is created before the old one is
        removed. The old record is kept on the tunnel until its deletion
        succeeds, so a failed cleanup is retried by the next edit or start.
        A service that was running is restarted on the new config.
        """
        acct, tunnel = self._resolve(name, account)
        self._refuse_if_deleting(tunnel)
        new_target = normalize_target(target) if target else tunnel.target
        new_zone = acct.zone(zone) if zone else None
        zone_changed = new_zone is not None and new_zone.id != tunnel.zone_id
        changed = new_target != tunnel.target or zone_changed

        if not changed and not tunnel.stale_dns:
            logger.info("Nothing to change", tunnel=tunnel.name)
            return OperationResult("edit", tunnel, ())
        if not tunnel.remote_id:
            raise ValidationError(
                f"Tunnel '{tunnel.name}' was never created remotely. Delete and add it again."
            )

        with self.begin(tunnel.name, acct.name, "edit"):
            old = self.snapshot().get_tunnel(tunnel.name, acct.name)
            current = old.update(target=new_target)
            if zone_changed and new_zone is not None:
                current = current.update(
                    zone_id=new_zone.id,
                    zone_name=new_zone.name,
                    hostname=build_hostname(old.name, new_zone.name),
                )
                current = current.without_stale_dns(
                    StaleDnsRecord(zone_id=current.zone_id, hostname=current.hostname)
                ).with_stale_dns(old.zone_id, old.hostname)
            was_active = False

            def get() -> Tunnel:
                return current

            def put(updated: Tunnel) -> None:
                nonlocal current
                current = updated

            async with self.registry_for(acct) as registry:

                async def check_service() -> None:
                    nonlocal was_active
                    was_active = await self.adapter.is_active(old)

                async def upsert_dns() -> None:
                    await registry.upsert_dns_record(
                        current.zone_id, current.hostname, current.remote_id or ""
                    )

                async def persist() -> None:
                    put(self._save_tunnel(current))

                async def write_config() -> None:
                    self._write_config(current)

                async def install_service() -> None:
                    await self.adapter.install(current, self._config_path(current))

                async def restart_service() -> None:
                    if was_active:
                        await self.adapter.stop(current)
                        await self.adapter.start(current)

                steps: list[Step] = []
                if changed:
                    steps.append(Step("check_service", check_service))
                    if zone_changed:
                        steps.append(Step("upsert_dns", upsert_dns))
                    steps.append(Step("persist", persist))
                if current.stale_dns:
                    steps.append(self._stale_dns_step(registry, get, put))
                if changed:
                    steps += [
                        Step("write_config", write_config),
                        Step("install_service", install_service),
                        Step("restart_service", restart_service),
                    ]
                completed = await self._run_steps("edit", tunnel.name, steps, token)

        return OperationResult("edit", current, completed)

    async def set_auto_start(
        self, name: str, enabled: bool, account: str | None = None
    ) -> OperationResult:
        acct, tunnel = self._resolve(name, account)
        with self.begin(tunnel.name, acct.name, "autostart"):
            current = self.snapshot().get_tunnel(tunnel.name, acct.name).update(auto_start=enabled)

            async def apply_service() -> None:
                await self.adapter.set_auto_start(current, enabled)

            async def persist() -> None:
                self._save_tunnel(current)

            completed = await self._run_steps(
                "autostart",
                tunnel.name,
                [Step("apply_service", apply_service), Step("persist", persist)],
            )
        return OperationResult("autostart", current, completed)

    # Ephemeral tunnels -------------------------------------------------------------

    async def list_ephemeral(self, account: str | None = None) -> list[Tunnel]:
        """Remote tunnels started by ``cftunnel run`` on this machine and not managed."""
        snapshot = self.snapshot()
        acct = snapshot.account(account)
        async with self.registry_for(acct) as registry:
            remote = await registry.list_tunnels()

        found = []
        for remote_tunnel in remote:
            if not remote_tunnel.name.startswith(REMOTE_NAME_PREFIX):
                continue
            if snapshot.find_by_remote_id(remote_tunnel.id) is not None:
                continue
            ingress = read_ingress(self.paths.ephemeral_config(remote_tunnel.id))
            if ingress is None:
                continue
            hostname, service = ingress
            zone = _match_zone(hostname, acct.zones)
            if zone is None:
                logger.debug("Ephemeral tunnel outside known zones", hostname=hostname)
                continue
            found.append(
                Tunnel(
                    name=hostname[: -len(zone.name) - 1],
                    account=acct.name,
                    target=service,
                    zone_id=zone.id,
                    zone_name=zone.name,
                    hostname=hostname,
                    remote_id=remote_tunnel.id,
                    mode=TunnelMode.EPHEMERAL,
                )
            )
        return found

    async def import_ephemeral(
        self,
        remote_id: str,
        name: str | None = None,
        account: str | None = None,
        token: CancelToken | None = None,
    ) -> OperationResult:
        """Adopt a running ephemeral tunnel as a managed one.

        The service is installed but not started: the foreground tunnel is
        still running and skips its teardown once it sees the record.

        Raises:
            TunnelNotFoundError: If no such ephemeral tunnel exists
            TunnelExistsError: If a managed tunnel already uses the name
        """
        candidates = await self.list_ephemeral(account)
        candidate = next((t for t in candidates if t.remote_id == remote_id), None)
        if candidate is None:
            raise TunnelNotFoundError(f"No running ephemeral tunnel with id '{remote_id}'")

        acct = self.snapshot().account(account)
        local_name = name or candidate.name
        with self.begin(local_name, acct.name, "import"):
            if self.snapshot().find_tunnel(local_name, acct.name) is not None:
                raise TunnelExistsError(f"Tunnel '{local_name}' already exists")

            tunnel = candidate.update(
                name=local_name,
                mode=TunnelMode.PERSISTENT,
                enabled=False,
                pending=(PendingStep.SERVICE,),
            )

            def get() -> Tunnel:
                return tunnel

            def put(updated: Tunnel) -> None:
                nonlocal tunnel
                tunnel = updated

            async with self.registry_for(acct) as registry:
                _, upsert, write, install, _ = self._start_steps(registry, get, put)

                async def ensure_credentials() -> None:
                    put(await self._ensure_remote(registry, tunnel))

                async def persist() -> None:
                    put(self._save_tunnel(tunnel))

                completed = await self._run_steps(
                    "import",
                    local_name,
                    [Step("ensure_credentials", ensure_credentials), upsert, Step("persist", persist), write, install],
                    token,
                )
        return OperationResult("import", tunnel, completed)

    async def delete_orphan(self, remote_id: str, account: str | None = None) -> bool:
        """Delete a remote tunnel that has no local record, with its DNS record."""
        snapshot = self.snapshot()
        acct = snapshot.account(account)
        if snapshot.find_by_remote_id(remote_id) is not None:
            raise ValidationError(f"Remote tunnel {remote_id} is managed; use delete instead")

        ingress = read_ingress(self.paths.ephemeral_config(remote_id))
        async with self.registry_for(acct) as registry:
            if ingress is not None:
                zone = _match_zone(ingress[0], acct.zones)
                if zone is not None:
                    await registry.delete_dns_record(zone.id, ingress[0])
            removed = await registry.delete_tunnel(remote_id)
        self.store.remove_credentials(remote_id)
        with contextlib.suppress(FileNotFoundError):
            self.paths.ephemeral_config(remote_id).unlink()
        return removed

    @staticmethod
    def _refuse_if_deleting(tunnel: Tunnel) -> None:
        if PendingStep.DELETE in tunnel.pending:
            raise ValidationError(
                f"Tunnel '{tunnel.name}' is pending deletion. "
                f"Run `cftunnel delete {tunnel.name}` to finish removing it."
            )
