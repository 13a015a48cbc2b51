"""Foreground tunnels that exist only while ``cftunnel run`` is running."""

import asyncio
import contextlib
import signal
from collections.abc import Callable

from .common.exceptions import CfTunnelError, TunnelExistsError
from .common.logging import get_logger
from .common.process import AsyncProcessManager, find_binary
from .common.utils import normalize_target, random_subdomain, split_subdomain
from .daemon.config import write_daemon_config
from .engine.operations import OperationEngine
from .registry.client import RegistryClient
from .state.models import Tunnel, TunnelMode

logger = get_logger(__name__)

# cloudflared is chatty; these markers keep connection events and problems
LOG_MARKERS = ("INF", "ERR", "WRN", "connection", "registered", "Tunnel")


def should_display(line: str) -> bool:
    return any(marker in line for marker in LOG_MARKERS)


class EphemeralRunner:
    """Creates a tunnel, runs cloudflared in the foreground and tears it all down on exit.

    Teardown runs on normal exit, Ctrl-C and SIGTERM alike, and is skipped
    when the tunnel was imported as a managed tunnel while running.
    """

    def __init__(
        self,
        engine: OperationEngine,
        daemon_binary: str = "cloudflared",
        echo: Callable[[str], None] = print,
    ):
        self.engine = engine
        self.daemon_binary = daemon_binary
        self.echo = echo

    async def run(
        self,
        target: str,
        name: str | None = None,
        zone: str | None = None,
        account: str | None = None,
    ) -> int:
        """Run an ephemeral tunnel until the daemon exits or we are signalled.

        Whatever was created remotely is torn down on the way out, including
        when preparation itself fails or is interrupted part way.

        Returns:
            The daemon's exit status (0 when stopped by a signal)
        """
        binary = find_binary(self.daemon_binary)
        tunnel = self.plan(target, name=name, zone=zone, account=account)
        try:
            tunnel = await self.provision(tunnel)
            return await self._supervise(binary, tunnel)
        finally:
            await self.teardown(tunnel)

    async def prepare(
        self,
        target: str,
        name: str | None = None,
        zone: str | None = None,
        account: str | None = None,
    ) -> Tunnel:
        """Create (or reuse) the remote tunnel and DNS record and write its config."""
        return await self.provision(self.plan(target, name=name, zone=zone, account=account))

    def plan(
        self,
        target: str,
        name: str | None = None,
        zone: str | None = None,
        account: str | None = None,
    ) -> Tunnel:
        """Validate the inputs and describe the tunnel to create. Touches nothing remote.

        Raises:
            TunnelExistsError: If the name belongs to a managed tunnel
        """
        snapshot = self.engine.snapshot()
        acct = snapshot.account(account)
        zone_obj = acct.zone(zone)
        subdomain = split_subdomain(name or random_subdomain(), zone_obj.name)
        target = normalize_target(target)

        if snapshot.find_tunnel(subdomain, acct.name) is not None:
            raise TunnelExistsError(
                f"'{subdomain}' is a managed tunnel. Use `cftunnel start {subdomain}` instead."
            )

        return Tunnel(
            name=subdomain,
            account=acct.name,
            target=target,
            zone_id=zone_obj.id,
            zone_name=zone_obj.name,
            hostname=f"{subdomain}.{zone_obj.name}",
            mode=TunnelMode.EPHEMERAL,
        )

    async def provision(self, tunnel: Tunnel) -> Tunnel:
        """Create the remote resources for a planned tunnel and write its daemon config."""
        self.echo(f"Setting up tunnel: {tunnel.hostname} -> {tunnel.target}")

        store = self.engine.store
        acct = self.engine.snapshot().account(tunnel.account)
        async with self.engine.registry_for(acct) as registry:
            remote_id, credentials = await registry.ensure_tunnel(
                tunnel.remote_name, store.read_credentials
            )
            store.write_credentials(credentials)
            tunnel = tunnel.update(remote_id=remote_id)
            await registry.upsert_dns_record(tunnel.zone_id, tunnel.hostname, remote_id)

        paths = self.engine.paths
        write_daemon_config(paths.ephemeral_config(remote_id), tunnel, paths.credentials(remote_id))
        logger.info("Ephemeral tunnel prepared", tunnel=tunnel.name, remote_id=remote_id)
        return tunnel

    async def _supervise(self, binary: str, tunnel: Tunnel) -> int:
        config_path = self.engine.paths.ephemeral_config(tunnel.remote_id or "")
        process = AsyncProcessManager(
            binary,
            [
                "tunnel",
                "--config",
                str(config_path),
                "--metrics",
                f"localhost:{tunnel.effective_metrics_port}",
                "run",
            ],
        )

        stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_requested.set)
            except (NotImplementedError, RuntimeError):
                continue
            installed.append(sig)

        pump: asyncio.Task[None] | None = None
        stopper: asyncio.Task[bool] | None = None
        try:
            await process.start()
            self.echo(f"Tunnel running: {tunnel.public_url} -> {tunnel.target}")
            self.echo("─" * 50)

            pump = asyncio.create_task(self._pump(process))
            stopper = asyncio.create_task(stop_requested.wait())
            await asyncio.wait({pump, stopper}, return_when=asyncio.FIRST_COMPLETED)

            if stop_requested.is_set():
                self.echo("\nShutting down tunnel...")
            await process.stop()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(pump, timeout=5.0)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            for task in (pump, stopper):
                if task is not None and not task.done():
                    task.cancel()
            await process.stop()

        if stop_requested.is_set():
            return 0
        return process.returncode or 0

    async def _pump(self, process: AsyncProcessManager) -> None:
        async for line in process.lines():
            if should_display(line):
                self.echo(line)
        await process.wait()

    async def teardown(self, tunnel: Tunnel) -> bool:
        """Remove everything ``prepare`` created. Returns False if the tunnel was kept.

        Also works on a tunnel whose preparation stopped part way: a missing
        remote id is looked up by the remote tunnel name, and resources that
        were never created are skipped.
        """
        paths = self.engine.paths
        acct = self.engine.snapshot().account(tunnel.account)
        async with self.engine.registry_for(acct) as registry:
            remote_id = tunnel.remote_id or await self._find_remote_id(registry, tunnel)
            if remote_id:
                with contextlib.suppress(FileNotFoundError):
                    paths.ephemeral_config(remote_id).unlink()
                if self.engine.snapshot().find_by_remote_id(remote_id) is not None:
                    self.echo("\nTunnel was imported as managed - keeping resources.")
                    return False

            self.echo("\nCleaning up...")
            try:
                await registry.delete_dns_record(tunnel.zone_id, tunnel.hostname)
            except CfTunnelError as e:
                logger.warning("Failed to delete DNS record", hostname=tunnel.hostname, error=str(e))
                self.echo(f"Warning: Failed to delete DNS record: {e}")
            if remote_id:
                try:
                    await registry.delete_tunnel(remote_id)
                except CfTunnelError as e:
                    logger.warning("Failed to delete remote tunnel", remote_id=remote_id, error=str(e))
                    self.echo(f"Warning: Failed to delete tunnel: {e}")
        if remote_id:
            self.engine.store.remove_credentials(remote_id)
        self.echo("Done.")
        return True

    async def _find_remote_id(self, registry: RegistryClient, tunnel: Tunnel) -> str:
        try:
            remote = await registry.get_tunnel_by_name(tunnel.remote_name)
        except CfTunnelError as e:
            logger.warning("Failed to look up remote tunnel", name=tunnel.remote_name, error=str(e))
            self.echo(f"Warning: Failed to look up tunnel {tunnel.remote_name}: {e}")
            return ""
        return remote.id if remote else ""
