"""Reading the log files cloudflared services append to."""

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from pathlib import Path


def tail(path: Path, lines: int = 50) -> list[str]:
    """Last ``lines`` lines of a log file, or an empty list if it does not exist."""
    if lines <= 0:
        return []
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
    except FileNotFoundError:
        return []


async def follow(path: Path, interval: float = 0.5) -> AsyncIterator[str]:
    """Yield lines appended to ``path`` from now on, like ``tail -f``.

    Waits for the file to appear and starts over when it is truncated.
    """
    position = path.stat().st_size if path.exists() else 0
    pending = ""
    while True:
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            await asyncio.sleep(interval)
            continue
        if size < position:
            position, pending = 0, ""
        if size == position:
            await asyncio.sleep(interval)
            continue

        with open(path, "rb") as f:
            f.seek(position)
            chunk = f.read()
            position = f.tell()
        pending += chunk.decode("utf-8", errors="replace")
        *complete, pending = pending.split("\n")
        for line in complete:
            yield line
