"""Async helpers for external commands and the supervised cloudflared child."""

import asyncio
import os
import shutil
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

from .exceptions import BinaryNotFoundError, ProcessError
from .logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(args: Sequence[str], timeout: float = 15.0) -> CommandResult:
    """Run a command to completion and capture its output.

    Raises:
        ProcessError: If the command cannot be started or exceeds ``timeout``
    """
    logger.debug("Running command", args=list(args))
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ProcessError(f"Failed to run {args[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError as e:
        process.kill()
        await process.wait()
        raise ProcessError(f"{args[0]} timed out after {timeout:.0f}s") from e

    return CommandResult(
        args=tuple(args),
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


def find_binary(name_or_path: str) -> str:
    """Resolve the daemon binary from an explicit path or the system PATH.

    Raises:
        BinaryNotFoundError: If the binary doesn't exist or isn't executable
    """
    if os.sep in name_or_path:
        path = Path(name_or_path)
        if not path.is_file():
            raise BinaryNotFoundError(f"Binary not found: {name_or_path}")
        if not os.access(path, os.X_OK):
            raise BinaryNotFoundError(f"Binary is not executable: {name_or_path}")
        return str(path)

    found = shutil.which(name_or_path)
    if found is None:
        raise BinaryNotFoundError(
            f"'{name_or_path}' not found in PATH. Install cloudflared from "
            "https://developers.cloudflare.com/cloudflare-one/connections/connect-networks/downloads/"
        )
    return found


class AsyncProcessManager:
    """Supervises one foreground daemon process."""

    def __init__(self, binary_path: str, args: Sequence[str]):
        self.binary_path = binary_path
        self.args = list(args)
        self._process: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        """Start the process with stderr captured for log streaming.

        Raises:
            ProcessError: If the process fails to start
        """
        if self.is_running():
            logger.debug("Process already running", pid=self.pid)
            return

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.binary_path,
                *self.args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessError(f"Failed to start {self.binary_path}: {e}") from e
        logger.info("Daemon process started", pid=self._process.pid)

    async def lines(self) -> AsyncIterator[str]:
        """Yield stderr lines until the process closes its output."""
        if self._process is None or self._process.stderr is None:
            return
        while True:
            raw = await self._process.stderr.readline()
            if not raw:
                break
            yield raw.decode(errors="replace").rstrip()

    async def wait(self) -> int:
        if self._process is None:
            return 0
        return await self._process.wait()

    async def stop(self, timeout: float = 5.0) -> None:
        """Terminate gracefully, killing the process if it ignores SIGTERM."""
        if not self.is_running() or self._process is None:
            return

        logger.info("Stopping daemon process", pid=self.pid)
        self._process.terminate()
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning("Process did not terminate gracefully, force killing", pid=self.pid)
            self._process.kill()
            await self._process.wait()

    async def __aenter__(self) -> "AsyncProcessManager":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()
