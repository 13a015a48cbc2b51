"""Runtime settings for cftunnel.

Settings are read once per process from ``CFTUNNEL_*`` environment variables
and passed explicitly to the components that need them.
"""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_API_BASE = "https://api.cloudflare.com/client/v4"
ENV_PREFIX = "CFTUNNEL_"


def default_config_dir() -> Path:
    """``$XDG_CONFIG_HOME/cftunnel``, falling back to ``~/.config/cftunnel``."""
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "cftunnel"


class Settings(BaseModel):
    """Process-wide settings."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra="forbid",
    )

    config_dir: Path = Field(default_factory=default_config_dir, description="State directory")
    api_base: str = Field(default=DEFAULT_API_BASE, description="Cloudflare API base URL")
    daemon_binary: str = Field(default="cloudflared", description="cloudflared name or path")

    status_interval: float = Field(default=5.0, ge=0.5, le=300.0, description="Liveness/metrics poll interval")
    health_interval: float = Field(default=30.0, ge=1.0, le=3600.0, description="Public hostname probe interval")
    probe_timeout: float = Field(default=5.0, ge=0.1, le=60.0, description="Health probe timeout")
    metrics_timeout: float = Field(default=2.0, ge=0.1, le=30.0, description="Metrics scrape timeout")
    command_timeout: float = Field(default=15.0, ge=1.0, le=120.0, description="Service manager command timeout")
    api_timeout: float = Field(default=30.0, ge=1.0, le=120.0, description="Cloudflare API request timeout")
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries for transient API failures")

    log_level: str = Field(default="WARNING", description="Log level for command output")
    update_check: bool = Field(default=True, description="Show a notice when a newer release is on PyPI")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level '{v}'")
        return v

    @field_validator("api_base")
    @classmethod
    def validate_api_base(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("API base must be an http(s) URL")
        return v.rstrip("/")

    @model_validator(mode="after")
    def check_intervals(self) -> "Settings":
        if self.health_interval < self.status_interval:
            raise ValueError("health_interval must not be shorter than status_interval")
        return self

    @property
    def log_file(self) -> Path:
        return self.config_dir / "cftunnel.log"

    @property
    def update_cache(self) -> Path:
        return self.config_dir / "update-check.json"

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, **overrides: Any
    ) -> "Settings":
        """Build settings from ``CFTUNNEL_<FIELD>`` variables plus explicit overrides."""
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for field_name in cls.model_fields:
            env_value = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
            if env_value is not None and env_value != "":
                values[field_name] = env_value
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
