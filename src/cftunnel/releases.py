"""New release notice.

``cftunnel update`` asks PyPI for the latest release and caches the answer.
Every other command only reads that cache, so it never waits on the network;
once the cache is a day old a detached ``cftunnel update`` refreshes it for
the next command.
"""

import subprocess
import sys
import time
from pathlib import Path

import httpx
from pydantic import BaseModel, ValidationError

from . import __version__
from .common.exceptions import UpdateCheckError
from .common.logging import get_logger

logger = get_logger(__name__)

PYPI_URL = "https://pypi.org/pypi/cftunnel/json"
CHECK_INTERVAL = 24 * 60 * 60


class ReleaseCache(BaseModel):
    latest_version: str
    checked_at: float


def parse_version(version: str) -> tuple[int, int, int]:
    """First three numeric parts of a dotted version; missing parts count as 0."""
    numbers = [int(part) for part in version.lstrip("v").split(".") if part.isdigit()]
    numbers += [0, 0, 0]
    return numbers[0], numbers[1], numbers[2]


def is_newer(current: str, latest: str) -> bool:
    return parse_version(latest) > parse_version(current)


def upgrade_command(prefix: str | None = None) -> str:
    """How to upgrade the running installation."""
    prefix = sys.prefix if prefix is None else prefix
    if "pipx" in Path(prefix).parts:
        return "pipx upgrade cftunnel"
    return "pip install -U cftunnel"


def read_cache(path: Path) -> ReleaseCache | None:
    try:
        return ReleaseCache.model_validate_json(path.read_text())
    except FileNotFoundError:
        return None
    except (OSError, ValidationError) as e:
        logger.debug("Ignoring unreadable release cache", path=str(path), error=str(e))
        return None


def write_cache(path: Path, latest_version: str, now: float | None = None) -> None:
    cache = ReleaseCache(latest_version=latest_version, checked_at=time.time() if now is None else now)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(cache.model_dump_json())


async def fetch_latest_version(
    timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None
) -> str:
    """Return the newest version of cftunnel published on PyPI.

    Raises:
        UpdateCheckError: If PyPI cannot be reached or answers unexpectedly
    """
    headers = {"User-Agent": f"cftunnel/{__version__}", "Accept": "application/json"}
    async with httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport) as client:
        try:
            response = await client.get(PYPI_URL)
            response.raise_for_status()
            return str(response.json()["info"]["version"])
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            raise UpdateCheckError(f"Could not read the latest release from PyPI: {e}") from e


async def refresh_latest_version(cache_path: Path, transport: httpx.AsyncBaseTransport | None = None) -> str:
    latest = await fetch_latest_version(transport=transport)
    write_cache(cache_path, latest)
    logger.info("Checked latest release", latest=latest, current=__version__)
    return latest


def start_background_check() -> None:
    """Refresh the cache from a detached ``cftunnel update`` whose output is discarded."""
    try:
        subprocess.Popen(
            [sys.executable, "-m", "cftunnel", "update"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        logger.debug("Could not start release check", error=str(e))


def pending_notice(cache_path: Path, current: str = __version__, now: float | None = None) -> str | None:
    """The notice to print after a command, from the cache alone.

    Returns None when no newer release is known. A missing or day-old cache
    starts a background refresh.
    """
    cache = read_cache(cache_path)
    if cache is not None and is_newer(current, cache.latest_version):
        return (
            f"cftunnel v{cache.latest_version} available (current: v{current}). "
            f"Run `{upgrade_command()}` to upgrade."
        )
    now = time.time() if now is None else now
    if cache is None or now - cache.checked_at >= CHECK_INTERVAL:
        start_background_check()
    return None
