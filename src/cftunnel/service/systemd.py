"""systemd user units for Linux."""

import contextlib
from pathlib import Path

from ..common.logging import get_logger
from ..state.models import Tunnel
from ..state.paths import Paths
from ..state.store import atomic_write
from .base import ServiceAdapter, ServiceState

logger = get_logger(__name__)

_STATES = {
    "active": ServiceState.ACTIVE,
    "reloading": ServiceState.ACTIVE,
    "activating": ServiceState.ACTIVATING,
    "failed": ServiceState.FAILED,
}


def default_unit_dir() -> Path:
    return Path.home() / ".config" / "systemd" / "user"


class SystemdUserAdapter(ServiceAdapter):
    """Runs each tunnel as ``cftunnel-<account>-<name>.service`` under ``systemctl --user``."""

    platform_name = "Linux"

    def __init__(
        self,
        paths: Paths,
        daemon_binary: str = "cloudflared",
        command_timeout: float = 15.0,
        unit_dir: Path | None = None,
    ):
        super().__init__(paths, daemon_binary, command_timeout)
        self.unit_dir = unit_dir or default_unit_dir()

    def unit_name(self, tunnel: Tunnel) -> str:
        return f"cftunnel-{tunnel.account}-{tunnel.name}.service"

    def descriptor_path(self, tunnel: Tunnel) -> Path:
        return self.unit_dir / self.unit_name(tunnel)

    def render_unit(self, tunnel: Tunnel, config_path: Path) -> str:
        log_path = self.paths.log(tunnel.account, tunnel.name)
        command = " ".join(self.daemon_command(tunnel, config_path))
        return f"""[Unit]
Description=Cloudflare Tunnel - {tunnel.name} ({tunnel.hostname})
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
ExecStart={command}
Restart=on-failure
RestartSec=5
StandardOutput=append:{log_path}
StandardError=append:{log_path}

[Install]
WantedBy=default.target
"""

    async def install(self, tunnel: Tunnel, config_path: Path) -> None:
        self.paths.log(tunnel.account, tunnel.name).parent.mkdir(parents=True, exist_ok=True)
        atomic_write(self.descriptor_path(tunnel), self.render_unit(tunnel, config_path))
        logger.info("Unit file written", tunnel=tunnel.name, path=str(self.descriptor_path(tunnel)))

        result = await self._run("systemctl", "--user", "daemon-reload")
        if not result.ok:
            raise self._fail("reload", tunnel, result)
        await self.set_auto_start(tunnel, tunnel.auto_start)

    async def remove(self, tunnel: Tunnel) -> None:
        unit = self.unit_name(tunnel)
        path = self.descriptor_path(tunnel)
        if not path.exists():
            logger.debug("Unit file already absent", tunnel=tunnel.name)
            return

        # stop/disable failures are irrelevant once the unit file is gone
        for action in ("stop", "disable"):
            result = await self._run("systemctl", "--user", action, unit)
            if not result.ok:
                logger.debug("Ignoring systemctl failure", action=action, unit=unit)
        with contextlib.suppress(FileNotFoundError):
            path.unlink()

        result = await self._run("systemctl", "--user", "daemon-reload")
        if not result.ok:
            raise self._fail("reload", tunnel, result)
        logger.info("Service removed", tunnel=tunnel.name)

    async def start(self, tunnel: Tunnel) -> None:
        if await self.status(tunnel) is ServiceState.ACTIVE:
            logger.debug("Service already active", tunnel=tunnel.name)
            return
        result = await self._run("systemctl", "--user", "start", self.unit_name(tunnel))
        if not result.ok:
            raise self._fail("start", tunnel, result)
        logger.info("Service started", tunnel=tunnel.name)

    async def stop(self, tunnel: Tunnel) -> None:
        state = await self.status(tunnel)
        if state in (ServiceState.INACTIVE, ServiceState.MISSING):
            logger.debug("Service already stopped", tunnel=tunnel.name, state=state.value)
            return
        result = await self._run("systemctl", "--user", "stop", self.unit_name(tunnel))
        if not result.ok:
            raise self._fail("stop", tunnel, result)
        logger.info("Service stopped", tunnel=tunnel.name)

    async def status(self, tunnel: Tunnel) -> ServiceState:
        if not self.descriptor_path(tunnel).exists():
            return ServiceState.MISSING
        result = await self._run("systemctl", "--user", "is-active", self.unit_name(tunnel))
        return _STATES.get(result.stdout.strip(), ServiceState.INACTIVE)

    async def set_auto_start(self, tunnel: Tunnel, enabled: bool) -> None:
        if not self.descriptor_path(tunnel).exists():
            logger.debug("No unit installed, auto-start applied on next install", tunnel=tunnel.name)
            return
        action = "enable" if enabled else "disable"
        result = await self._run("systemctl", "--user", action, self.unit_name(tunnel))
        if not result.ok:
            raise self._fail(action, tunnel, result)
