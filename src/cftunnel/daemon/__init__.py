"""Everything that touches the cloudflared daemon: its config, metrics and health."""

from .config import read_ingress, render_daemon_config, write_daemon_config
from .metrics import MetricsHistory, MetricsSnapshot, parse_prometheus
from .probe import DaemonProbe, Health

__all__ = [
    "DaemonProbe",
    "Health",
    "MetricsHistory",
    "MetricsSnapshot",
    "parse_prometheus",
    "read_ingress",
    "render_daemon_config",
    "write_daemon_config",
]
