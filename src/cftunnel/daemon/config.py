"""cloudflared configuration files."""

from pathlib import Path
from typing import Any

import yaml

from ..common.logging import get_logger
from ..state.models import Tunnel
from ..state.store import atomic_write

logger = get_logger(__name__)

CATCH_ALL_SERVICE = "http_status:404"


def build_daemon_config(tunnel: Tunnel, credentials_path: Path) -> dict[str, Any]:
    if not tunnel.remote_id:
        raise ValueError(f"Tunnel '{tunnel.name}' has no remote id yet")
    return {
        "tunnel": tunnel.remote_id,
        "credentials-file": str(credentials_path),
        "metrics": f"localhost:{tunnel.effective_metrics_port}",
        "ingress": [
            {"hostname": tunnel.hostname, "service": tunnel.target},
            {"service": CATCH_ALL_SERVICE},
        ],
    }


def render_daemon_config(tunnel: Tunnel, credentials_path: Path) -> str:
    return yaml.safe_dump(
        build_daemon_config(tunnel, credentials_path),
        default_flow_style=False,
        sort_keys=False,
    )


def write_daemon_config(path: Path, tunnel: Tunnel, credentials_path: Path) -> Path:
    """Write the config cloudflared runs ``tunnel`` with. Regenerated on every start."""
    atomic_write(path, render_daemon_config(tunnel, credentials_path), mode=0o600)
    logger.debug("Daemon config written", tunnel=tunnel.name, path=str(path))
    return path


def read_ingress(path: Path) -> tuple[str, str] | None:
    """Return ``(hostname, service)`` of the first real ingress rule in a config file.

    Returns None when the file is missing or has no hostname rule.
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except yaml.YAMLError as e:
        logger.warning("Unreadable daemon config", path=str(path), error=str(e))
        return None

    if not isinstance(data, dict):
        return None
    for rule in data.get("ingress") or []:
        if not isinstance(rule, dict):
            continue
        hostname = rule.get("hostname")
        service = rule.get("service")
        if hostname and service and CATCH_ALL_SERVICE not in str(service):
            return str(hostname), str(service)
    return None
