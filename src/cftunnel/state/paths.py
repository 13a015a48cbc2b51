"""File layout under the cftunnel config directory."""

from pathlib import Path


class Paths:
    """Locations of every file cftunnel reads or writes.

    Daemon configs, service descriptors and logs are regenerable caches; only
    ``config.toml``, ``tunnels.toml`` and the credential blobs are state.
    Per-tunnel files live under a directory per account, since tunnel names
    are only unique within an account.
    """

    def __init__(self, config_dir: Path):
        self.config_dir = Path(config_dir)

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.toml"

    @property
    def tunnels_file(self) -> Path:
        return self.config_dir / "tunnels.toml"

    @property
    def daemon_configs_dir(self) -> Path:
        return self.config_dir / "tunnel-configs"

    @property
    def logs_dir(self) -> Path:
        return self.config_dir / "logs"

    def credentials(self, remote_id: str) -> Path:
        return self.config_dir / f"{remote_id}.json"

    def daemon_config(self, account: str, name: str) -> Path:
        return self.daemon_configs_dir / account / f"{name}.yml"

    def ephemeral_config(self, remote_id: str) -> Path:
        return self.config_dir / f"tunnel-{remote_id}.yml"

    def log(self, account: str, name: str) -> Path:
        return self.logs_dir / account / f"{name}.log"

    def ensure_dirs(self) -> None:
        for directory in (self.config_dir, self.daemon_configs_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)
