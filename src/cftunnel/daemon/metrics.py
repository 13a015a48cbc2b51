"""cloudflared Prometheus metrics and request history."""

import re

from pydantic import BaseModel, ConfigDict

SPARK_BLOCKS = "▁▂▃▄▅▆▇█"
HISTORY_SIZE = 30

_STATUS_CODE_RE = re.compile(r'status_code="(\d+)"')
_EDGE_LOCATION_RE = re.compile(r'edge_location="([^"]+)"')

_COUNTERS = {
    "cloudflared_tunnel_total_requests": "total_requests",
    "cloudflared_tunnel_request_errors": "request_errors",
    "cloudflared_tunnel_ha_connections": "ha_connections",
    "cloudflared_tunnel_concurrent_requests_per_tunnel": "concurrent_requests",
}


class MetricsSnapshot(BaseModel):
    """One scrape of a tunnel's metrics endpoint."""

    model_config = ConfigDict(frozen=True)

    total_requests: int = 0
    request_errors: int = 0
    ha_connections: int = 0
    concurrent_requests: int = 0
    response_codes: dict[int, int] = {}
    edge_locations: tuple[str, ...] = ()

    @property
    def locations(self) -> str:
        return ", ".join(self.edge_locations) if self.edge_locations else "None"


def _sample_value(line: str) -> int | None:
    try:
        return int(float(line.rsplit(maxsplit=1)[-1]))
    except (ValueError, IndexError):
        return None


def parse_prometheus(text: str) -> MetricsSnapshot | None:
    """Extract the tunnel metrics we display from Prometheus text format.

    Returns None when no cloudflared tunnel sample could be read, so a page
    served by some other listener on the port is not mistaken for a daemon.
    """
    values: dict[str, int] = {}
    codes: dict[int, int] = {}
    locations: set[str] = set()

    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        name = line.split("{", 1)[0].split(maxsplit=1)[0]

        if name in _COUNTERS:
            value = _sample_value(line)
            if value is not None:
                values[_COUNTERS[name]] = value
        elif name == "cloudflared_tunnel_response_by_code":
            code = _STATUS_CODE_RE.search(line)
            value = _sample_value(line)
            if code and value is not None:
                codes[int(code.group(1))] = value
        elif name == "cloudflared_tunnel_server_locations":
            location = _EDGE_LOCATION_RE.search(line)
            if location:
                locations.add(location.group(1))

    if not (values or codes or locations):
        return None
    return MetricsSnapshot(
        **values,
        response_codes=codes,
        edge_locations=tuple(sorted(locations)),
    )


class MetricsHistory(BaseModel):
    """Requests handled per poll interval, newest last."""

    model_config = ConfigDict(frozen=True)

    samples: tuple[int, ...] = ()
    last_total: int = 0

    def record(self, total_requests: int) -> "MetricsHistory":
        # a lower total means cloudflared restarted and its counter reset
        if total_requests >= self.last_total:
            delta = total_requests - self.last_total
        else:
            delta = total_requests
        samples = (*self.samples, delta)[-HISTORY_SIZE:]
        return MetricsHistory(samples=samples, last_total=total_requests)

    def sparkline(self) -> str:
        if not self.samples:
            return ""
        peak = max(max(self.samples), 1)
        top = len(SPARK_BLOCKS) - 1
        return "".join(
            SPARK_BLOCKS[min(round(value / peak * top), top)] for value in self.samples
        )
