"""Validation and formatting helpers shared across cftunnel."""

import re
import secrets
import string
from typing import Any
from urllib.parse import urlparse

from .exceptions import ValidationError

MIN_PORT = 1
MAX_PORT = 65535

# cloudflared listens on 20241-20245 by default, stay clear of it
METRICS_PORT_BASE = 21000
METRICS_PORT_SPAN = 1000

REMOTE_NAME_PREFIX = "cftunnel-"

_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


def validate_port(port: int, port_name: str = "Port") -> None:
    """Validate port number range.

    Raises:
        ValidationError: If port is not in valid range (1-65535)
    """
    if not isinstance(port, int) or not (MIN_PORT <= port <= MAX_PORT):
        raise ValidationError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")


def validate_non_empty_string(value: str, field_name: str) -> str:
    """Validate that a string is not empty or only whitespace.

    Returns:
        Stripped string value
    """
    if not value or not value.strip():
        raise ValidationError(f"{field_name} cannot be empty")
    return value.strip()


def normalize_target(target: str) -> str:
    """Turn a user-supplied target into the service URL cloudflared expects.

    ``localhost:3000`` becomes ``http://localhost:3000``; full http(s) URLs
    are kept as given.

    Raises:
        ValidationError: If the target has no host or an invalid port
    """
    target = validate_non_empty_string(target, "Target")
    url = target if re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", target) else f"http://{target}"

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValidationError(f"Unsupported target scheme '{parsed.scheme}' in '{target}'")
    if not parsed.hostname:
        raise ValidationError(f"Target '{target}' has no host")
    try:
        port = parsed.port
    except ValueError as e:
        raise ValidationError(f"Target '{target}' has an invalid port") from e
    if port is not None:
        validate_port(port, "Target port")
    return url


def split_subdomain(name: str, zone_name: str) -> str:
    """Return the subdomain part of ``name`` under ``zone_name``.

    Accepts either a bare subdomain (``api``, ``api.dev``) or a full hostname
    ending in the zone (``api.dev.example.com``).

    Raises:
        ValidationError: If any label is not a valid DNS label
    """
    name = validate_non_empty_string(name, "Tunnel name").lower().rstrip(".")
    suffix = f".{zone_name.lower()}"
    if name.endswith(suffix):
        name = name[: -len(suffix)]
    if name == zone_name.lower():
        raise ValidationError("Tunnel name cannot be the zone apex")

    for label in name.split("."):
        if not _LABEL_RE.match(label):
            raise ValidationError(
                f"Invalid tunnel name '{name}': labels must be 1-63 characters of "
                "a-z, 0-9 and '-' and cannot start or end with '-'"
            )
    return name


def build_hostname(name: str, zone_name: str) -> str:
    """Public hostname for a tunnel: ``<subdomain>.<zone>``."""
    return f"{split_subdomain(name, zone_name)}.{zone_name.lower()}"


def remote_tunnel_name(name: str, account: str = "") -> str:
    """Name under which a tunnel is registered with the provider.

    The local account is part of the name: two accounts may share one
    provider account and each have a tunnel called ``name``.
    """
    local = f"{account}-{name}" if account else name
    return f"{REMOTE_NAME_PREFIX}{local.replace('.', '-')}"


def metrics_port_for(key: str) -> int:
    """Stable metrics port derived from a tunnel key such as ``account/name``."""
    acc = 0
    for byte in key.encode():
        acc = ((acc + byte) * 31) & 0xFFFFFFFF
    return METRICS_PORT_BASE + acc % METRICS_PORT_SPAN


def random_subdomain(length: int = 6) -> str:
    """Generate a throwaway subdomain such as ``tun-x8k2qa``."""
    alphabet = string.ascii_lowercase + string.digits
    return "tun-" + "".join(secrets.choice(alphabet) for _ in range(length))


def mask_sensitive_data(
    value: str | None, mask_char: str = "*", show_chars: int = 4
) -> str:
    """Mask sensitive data for logging while preserving the last few characters."""
    if not value:
        return "<None>"

    if len(value) <= show_chars:
        return mask_char * len(value)

    masked_length = len(value) - show_chars
    return mask_char * masked_length + value[-show_chars:]


def sanitize_log_data(data: dict[str, Any]) -> dict[str, Any]:
    """Mask token/secret-like fields of a dictionary before logging it."""
    sensitive_fields = {
        "token",
        "password",
        "secret",
        "api_key",
        "authorization",
    }

    sanitized = {}
    for key, value in data.items():
        if any(sensitive_field in key.lower() for sensitive_field in sensitive_fields):
            sanitized[key] = mask_sensitive_data(str(value) if value else None)
        else:
            sanitized[key] = value

    return sanitized
