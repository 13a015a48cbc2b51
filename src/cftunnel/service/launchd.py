"""launchd user agents for macOS."""

import contextlib
import plistlib
import re
from pathlib import Path
from typing import Any

from ..common.logging import get_logger
from ..state.models import Tunnel
from ..state.paths import Paths
from .base import ServiceAdapter, ServiceState

logger = get_logger(__name__)

_PID_RE = re.compile(r'"PID"\s*=\s*(\d+);')
_EXIT_RE = re.compile(r'"LastExitStatus"\s*=\s*(-?\d+);')


def default_agents_dir() -> Path:
    return Path.home() / "Library" / "LaunchAgents"


class LaunchdAdapter(ServiceAdapter):
    """Runs each tunnel as the agent ``com.cftunnel.<account>.<name>``."""

    platform_name = "Darwin"

    def __init__(
        self,
        paths: Paths,
        daemon_binary: str = "cloudflared",
        command_timeout: float = 15.0,
        agents_dir: Path | None = None,
    ):
        super().__init__(paths, daemon_binary, command_timeout)
        self.agents_dir = agents_dir or default_agents_dir()

    def label(self, tunnel: Tunnel) -> str:
        return f"com.cftunnel.{tunnel.account}.{tunnel.name}"

    def descriptor_path(self, tunnel: Tunnel) -> Path:
        return self.agents_dir / f"{self.label(tunnel)}.plist"

    def render_plist(self, tunnel: Tunnel, config_path: Path) -> bytes:
        log_path = str(self.paths.log(tunnel.account, tunnel.name))
        agent: dict[str, Any] = {
            "Label": self.label(tunnel),
            "ProgramArguments": self.daemon_command(tunnel, config_path),
            "RunAtLoad": tunnel.auto_start,
            "KeepAlive": {"SuccessfulExit": False},
            "StandardOutPath": log_path,
            "StandardErrorPath": log_path,
            "ProcessType": "Background",
        }
        return plistlib.dumps(agent)

    async def install(self, tunnel: Tunnel, config_path: Path) -> None:
        self.paths.log(tunnel.account, tunnel.name).parent.mkdir(parents=True, exist_ok=True)
        path = self.descriptor_path(tunnel)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.render_plist(tunnel, config_path))
        logger.info("Launch agent written", tunnel=tunnel.name, path=str(path))

    async def remove(self, tunnel: Tunnel) -> None:
        path = self.descriptor_path(tunnel)
        if not path.exists():
            logger.debug("Launch agent already absent", tunnel=tunnel.name)
            return
        await self.stop(tunnel)
        with contextlib.suppress(FileNotFoundError):
            path.unlink()
        logger.info("Launch agent removed", tunnel=tunnel.name)

    async def start(self, tunnel: Tunnel) -> None:
        state = await self.status(tunnel)
        if state is ServiceState.ACTIVE:
            logger.debug("Agent already running", tunnel=tunnel.name)
            return
        path = str(self.descriptor_path(tunnel))
        if state is not ServiceState.MISSING:
            # loaded but exited: launchd will not rerun it without a reload
            await self._run("launchctl", "unload", path)
        result = await self._run("launchctl", "load", "-w", path)
        if not result.ok and "already loaded" not in result.stderr.lower():
            raise self._fail("start", tunnel, result)
        logger.info("Agent loaded", tunnel=tunnel.name)

    async def stop(self, tunnel: Tunnel) -> None:
        path = self.descriptor_path(tunnel)
        if not path.exists():
            return
        result = await self._run("launchctl", "unload", str(path))
        stderr = result.stderr.lower()
        if not result.ok and "could not find" not in stderr and "not loaded" not in stderr:
            raise self._fail("stop", tunnel, result)
        logger.info("Agent unloaded", tunnel=tunnel.name)

    async def status(self, tunnel: Tunnel) -> ServiceState:
        if not self.descriptor_path(tunnel).exists():
            return ServiceState.MISSING
        result = await self._run("launchctl", "list", self.label(tunnel))
        if not result.ok:
            return ServiceState.INACTIVE
        if _PID_RE.search(result.stdout):
            return ServiceState.ACTIVE
        exit_match = _EXIT_RE.search(result.stdout)
        if exit_match and int(exit_match.group(1)) != 0:
            return ServiceState.FAILED
        return ServiceState.INACTIVE

    async def set_auto_start(self, tunnel: Tunnel, enabled: bool) -> None:
        path = self.descriptor_path(tunnel)
        if not path.exists():
            logger.debug("No agent installed, auto-start applied on next install", tunnel=tunnel.name)
            return
        with open(path, "rb") as f:
            agent = plistlib.load(f)
        agent["RunAtLoad"] = enabled
        path.write_bytes(plistlib.dumps(agent))
