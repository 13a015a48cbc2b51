"""Contract shared by the OS service backends."""

from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path

from ..common.exceptions import OSServiceFailure
from ..common.logging import get_logger
from ..common.process import CommandResult, find_binary, run_command
from ..state.models import Tunnel
from ..state.paths import Paths

logger = get_logger(__name__)


class ServiceState(str, Enum):
    """What the OS service manager reports for a tunnel's service."""

    ACTIVE = "active"
    ACTIVATING = "activating"
    INACTIVE = "inactive"
    FAILED = "failed"
    MISSING = "missing"


class ServiceAdapter(ABC):
    """Installs and controls the background service that runs cloudflared.

    Implementations must make ``start`` and ``stop`` no-ops when the service is
    already in the requested state, and ``remove`` must tolerate a service
    that was never installed.
    """

    platform_name = "unknown"

    def __init__(
        self,
        paths: Paths,
        daemon_binary: str = "cloudflared",
        command_timeout: float = 15.0,
    ):
        self.paths = paths
        self.daemon_binary = daemon_binary
        self.command_timeout = command_timeout

    def daemon_command(self, tunnel: Tunnel, config_path: Path) -> list[str]:
        """Command line the service runs for ``tunnel``.

        Raises:
            BinaryNotFoundError: If cloudflared cannot be located
        """
        return [
            find_binary(self.daemon_binary),
            "tunnel",
            "--config",
            str(config_path),
            "--metrics",
            f"localhost:{tunnel.effective_metrics_port}",
            "run",
        ]

    @abstractmethod
    def descriptor_path(self, tunnel: Tunnel) -> Path:
        """Path of the unit/plist file for ``tunnel``."""

    @abstractmethod
    async def install(self, tunnel: Tunnel, config_path: Path) -> None:
        """Write (or overwrite) the service descriptor and register it."""

    @abstractmethod
    async def remove(self, tunnel: Tunnel) -> None:
        """Stop, unregister and delete the descriptor. Absence is success."""

    @abstractmethod
    async def start(self, tunnel: Tunnel) -> None:
        pass

    @abstractmethod
    async def stop(self, tunnel: Tunnel) -> None:
        pass

    @abstractmethod
    async def status(self, tunnel: Tunnel) -> ServiceState:
        pass

    @abstractmethod
    async def set_auto_start(self, tunnel: Tunnel, enabled: bool) -> None:
        """Make the service start (or not) when the user logs in."""

    async def is_active(self, tunnel: Tunnel) -> bool:
        return await self.status(tunnel) is ServiceState.ACTIVE

    async def _run(self, *args: str) -> CommandResult:
        return await run_command(args, timeout=self.command_timeout)

    def _fail(self, action: str, tunnel: Tunnel, result: CommandResult) -> OSServiceFailure:
        detail = (result.stderr or result.stdout).strip() or f"exit status {result.returncode}"
        logger.error(
            "Service command failed",
            action=action,
            tunnel=tunnel.name,
            returncode=result.returncode,
            detail=detail,
        )
        return OSServiceFailure(f"Failed to {action} service for '{tunnel.name}': {detail}")


class UnsupportedServiceAdapter(ServiceAdapter):
    """Stand-in for platforms without a supported service manager."""

    def __init__(
        self,
        paths: Paths,
        system: str,
        daemon_binary: str = "cloudflared",
        command_timeout: float = 15.0,
    ):
        super().__init__(paths, daemon_binary, command_timeout)
        self.platform_name = system or "unknown"

    def _unsupported(self) -> OSServiceFailure:
        return OSServiceFailure(
            f"Background services are not supported on {self.platform_name}. "
            "Use `cftunnel run` for a foreground tunnel."
        )

    def descriptor_path(self, tunnel: Tunnel) -> Path:
        raise self._unsupported()

    async def install(self, tunnel: Tunnel, config_path: Path) -> None:
        raise self._unsupported()

    async def remove(self, tunnel: Tunnel) -> None:
        raise self._unsupported()

    async def start(self, tunnel: Tunnel) -> None:
        raise self._unsupported()

    async def stop(self, tunnel: Tunnel) -> None:
        raise self._unsupported()

    async def status(self, tunnel: Tunnel) -> ServiceState:
        raise self._unsupported()

    async def set_auto_start(self, tunnel: Tunnel, enabled: bool) -> None:
        raise self._unsupported()
