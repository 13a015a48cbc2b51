"""Durable state: accounts and zones in ``config.toml``, tunnels in ``tunnels.toml``.

Files are read with :mod:`tomllib` and written as hand-formatted TOML, since
tomllib is read-only. Every write goes to a temporary file in the same
directory and is renamed over the target, so a crash never leaves a
half-written file behind.
"""

import contextlib
import json
import os
import shutil
import tempfile
import tomllib
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pydantic

from ..common.exceptions import LocalStoreCorruptError, NotInitializedError
from ..common.logging import get_logger
from .models import Account, Credentials, StateSnapshot, Tunnel, TunnelMode
from .paths import Paths

logger = get_logger(__name__)


def atomic_write(path: Path, content: str, mode: int = 0o644) -> None:
    """Replace ``path`` with ``content`` using write-temp-then-rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(temp_path)
        raise


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_toml_value(v) for v in value) + "]"
    # JSON string escapes are a subset of TOML basic-string escapes
    return json.dumps(str(getattr(value, "value", value)), ensure_ascii=False)


def _toml_table(header: str, items: Iterable[tuple[str, Any]]) -> list[str]:
    lines = [header]
    for key, value in items:
        if value is None:
            continue
        lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")
    return lines


class StateStore:
    """Reads and writes the persisted snapshot.

    The store keeps no cache: every ``load`` reads the files again.
    """

    def __init__(self, paths: Paths):
        self.paths = paths

    def exists(self) -> bool:
        return self.paths.config_file.exists()

    def load(self) -> StateSnapshot:
        """Load the full snapshot from disk.

        Raises:
            NotInitializedError: If ``config.toml`` does not exist
            LocalStoreCorruptError: If either file cannot be parsed or validated
        """
        config_file = self.paths.config_file
        if not config_file.exists():
            raise NotInitializedError("cftunnel is not configured. Run `cftunnel init` first.")

        config_data = self._read_toml(config_file)
        tunnels_data = (
            self._read_toml(self.paths.tunnels_file)
            if self.paths.tunnels_file.exists()
            else {}
        )

        try:
            accounts = tuple(
                Account.model_validate(
                    {**raw, "zones": tuple(raw.get("zones", ()))}
                )
                for raw in config_data.get("accounts", [])
            )
            tunnels = tuple(Tunnel.model_validate(raw) for raw in tunnels_data.get("tunnels", []))
        except (pydantic.ValidationError, TypeError, AttributeError) as e:
            raise LocalStoreCorruptError(f"Invalid state in {self.paths.config_dir}: {e}") from e

        names = [a.name for a in accounts]
        if len(set(names)) != len(names):
            raise LocalStoreCorruptError(f"Duplicate account names in {config_file}")

        default = config_data.get("default_account")
        if default not in names:
            if default:
                logger.warning("Default account missing, using first account", default=default)
            default = names[0] if names else None

        snapshot = StateSnapshot(accounts=accounts, default_account=default, tunnels=tunnels)
        return self._migrate(snapshot)

    def save(self, snapshot: StateSnapshot) -> None:
        """Write the full snapshot, replacing both files atomically."""
        self.paths.config_dir.mkdir(parents=True, exist_ok=True)
        atomic_write(self.paths.tunnels_file, self._tunnels_toml(snapshot), mode=0o600)
        atomic_write(self.paths.config_file, self._config_toml(snapshot), mode=0o600)
        logger.debug(
            "State saved",
            accounts=len(snapshot.accounts),
            tunnels=len(snapshot.tunnels),
        )

    def reset(self) -> None:
        """Remove all state, including corrupt files. Only ever user-initiated."""
        for path in (self.paths.config_file, self.paths.tunnels_file):
            with contextlib.suppress(FileNotFoundError):
                path.unlink()
        for credentials in self.paths.config_dir.glob("*.json"):
            credentials.unlink()
        for directory in (self.paths.daemon_configs_dir, self.paths.logs_dir):
            shutil.rmtree(directory, ignore_errors=True)
        logger.info("State reset", config_dir=str(self.paths.config_dir))

    # Credentials ------------------------------------------------------------

    def read_credentials(self, remote_id: str) -> Credentials | None:
        """Return stored credentials for a remote tunnel, or None if absent.

        Raises:
            LocalStoreCorruptError: If the credentials file exists but is invalid
        """
        path = self.paths.credentials(remote_id)
        if not path.exists():
            return None
        try:
            return Credentials.model_validate_json(path.read_text(encoding="utf-8"))
        except pydantic.ValidationError as e:
            raise LocalStoreCorruptError(f"Invalid credentials file {path}: {e}") from e

    def write_credentials(self, credentials: Credentials) -> Path:
        path = self.paths.credentials(credentials.tunnel_id)
        content = credentials.model_dump_json(by_alias=True, indent=2)
        atomic_write(path, content + "\n", mode=0o600)
        return path

    def remove_credentials(self, remote_id: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.paths.credentials(remote_id).unlink()

    # Internals --------------------------------------------------------------

    def _read_toml(self, path: Path) -> dict[str, Any]:
        try:
            with open(path, "rb") as f:
                return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            logger.error("Failed to parse state file", path=str(path), error=str(e))
            raise LocalStoreCorruptError(
                f"Cannot parse {path}: {e}. Fix the file or run `cftunnel reset`."
            ) from e
        except UnicodeDecodeError as e:
            raise LocalStoreCorruptError(f"Cannot decode {path}: {e}") from e

    def _migrate(self, snapshot: StateSnapshot) -> StateSnapshot:
        """Assign records saved before multi-account support to the default account."""
        if snapshot.default_account is None:
            return snapshot
        legacy = [t for t in snapshot.tunnels if not t.account]
        if not legacy:
            return snapshot
        tunnels = tuple(
            t if t.account else t.update(account=snapshot.default_account)
            for t in snapshot.tunnels
        )
        migrated = snapshot.model_copy(update={"tunnels": tunnels})
        self.save(migrated)
        logger.info("Migrated legacy tunnel records", count=len(legacy))
        return migrated

    def _config_toml(self, snapshot: StateSnapshot) -> str:
        lines = ["# cftunnel configuration. Tokens are secrets: keep this file private.", ""]
        if snapshot.default_account:
            lines += [f"default_account = {_toml_value(snapshot.default_account)}", ""]
        for account in snapshot.accounts:
            lines += _toml_table(
                "[[accounts]]",
                [
                    ("name", account.name),
                    ("display_name", account.display_name),
                    ("api_token", account.api_token),
                    ("account_id", account.account_id),
                    ("default_zone_id", account.default_zone_id),
                ],
            )
            for zone in account.zones:
                lines += _toml_table(
                    "[[accounts.zones]]", [("id", zone.id), ("name", zone.name)]
                )
        return "\n".join(lines)

    def _tunnels_toml(self, snapshot: StateSnapshot) -> str:
        lines: list[str] = []
        for tunnel in snapshot.tunnels:
            if tunnel.mode is TunnelMode.EPHEMERAL:
                continue
            lines += _toml_table(
                "[[tunnels]]",
                [
                    ("name", tunnel.name),
                    ("account", tunnel.account),
                    ("target", tunnel.target),
                    ("zone_id", tunnel.zone_id),
                    ("zone_name", tunnel.zone_name),
                    ("hostname", tunnel.hostname),
                    ("remote_id", tunnel.remote_id),
                    ("enabled", tunnel.enabled),
                    ("auto_start", tunnel.auto_start),
                    ("mode", tunnel.mode),
                    ("metrics_port", tunnel.metrics_port),
                    ("pending", [p.value for p in tunnel.pending]),
                ],
            )
            for record in tunnel.stale_dns:
                lines += _toml_table(
                    "[[tunnels.stale_dns]]",
                    [("zone_id", record.zone_id), ("hostname", record.hostname)],
                )
        return "\n".join(lines)
