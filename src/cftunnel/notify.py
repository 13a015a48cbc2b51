"""Desktop notifications for tunnel health changes."""

import platform

from .common.exceptions import ProcessError
from .common.logging import get_logger
from .common.process import run_command

logger = get_logger(__name__)


def _applescript_quote(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


async def send_notification(title: str, message: str, system: str | None = None) -> bool:
    """Show a desktop notification. Returns False if none could be shown.

    Uses ``notify-send`` on Linux and ``terminal-notifier`` (falling back to
    ``osascript``) on macOS.
    """
    system = system if system is not None else platform.system()
    if system == "Linux":
        candidates = [["notify-send", title, message]]
    elif system == "Darwin":
        script = (
            f'display notification "{_applescript_quote(message)}" '
            f'with title "{_applescript_quote(title)}"'
        )
        candidates = [
            ["terminal-notifier", "-title", title, "-message", message, "-sound", "default"],
            ["osascript", "-e", script],
        ]
    else:
        return False

    for args in candidates:
        try:
            result = await run_command(args, timeout=5.0)
        except ProcessError as e:
            logger.debug("Notifier unavailable", notifier=args[0], error=str(e))
            continue
        if result.ok:
            return True
        logger.debug("Notifier failed", notifier=args[0], returncode=result.returncode)
    return False
