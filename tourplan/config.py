"""Configuration loading for Tourplan."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SEED_USERS: dict[str, dict[str, Any]] = {
    "Sahil Sharma": {"password": "8371", "isAdmin": False},
    "Vijay Kumar": {"password": "4926", "isAdmin": False},
    "Pawan Gupta": {"password": "7149", "isAdmin": False},
    "Sunil Suri": {"password": "3652", "isAdmin": False},
    "Sudhir Kumar": {"password": "9211", "isAdmin": True},
}


@dataclass
class ClientConfig:
    name: str = "tourplan-client"


@dataclass
class StoreConfig:
    """Configuration for the local cache document."""

    db_path: str = "~/.tourplan/cache.db"
    max_bytes: int | None = 5 * 1024 * 1024  # browser-style storage quota
    seed_users: dict[str, dict[str, Any]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_SEED_USERS.items()}
    )


@dataclass
class RemoteConfig:
    """Configuration for the remote datastore gateway."""

    base_url: str = "http://localhost:8888/.netlify/functions"
    timeout_seconds: float = 10.0
    max_retries: int = 3
    backoff_base_seconds: float = 1.0


@dataclass
class SyncConfig:
    """Configuration for queue replay."""

    enabled: bool = True
    interval_seconds: int = 300
    max_attempts: int = 5
    start_online: bool = True


@dataclass
class Config:
    client: ClientConfig = field(default_factory=ClientConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with TOURPLAN_ prefix."""
    return os.environ.get(f"TOURPLAN_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if name := _get_env("CLIENT_NAME"):
        config.client.name = name

    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path

    # Remote overrides
    if base_url := _get_env("REMOTE_URL"):
        config.remote.base_url = base_url
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout_seconds = float(timeout)
    if retries := _get_env("REMOTE_RETRIES"):
        config.remote.max_retries = int(retries)

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _is_true(sync_enabled)
    if interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_seconds = int(interval)

    return config


def _parse_seed_users(data: dict) -> dict[str, dict[str, Any]]:
    """Parse seed user configurations."""
    users = {}
    for name, user_data in data.items():
        users[name] = {
            "password": str(user_data["password"]),
            "isAdmin": bool(user_data.get("isAdmin", False)),
        }
    return users


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "client" in data:
                config.client = ClientConfig(
                    name=data["client"].get("name", config.client.name)
                )

            if "store" in data:
                store_data = data["store"]
                seed_users = config.store.seed_users
                if "seed_users" in store_data:
                    seed_users = _parse_seed_users(store_data["seed_users"] or {})

                config.store = StoreConfig(
                    db_path=store_data.get("db_path", config.store.db_path),
                    max_bytes=store_data.get("max_bytes", config.store.max_bytes),
                    seed_users=seed_users,
                )

            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    base_url=remote_data.get("base_url", config.remote.base_url),
                    timeout_seconds=remote_data.get(
                        "timeout_seconds", config.remote.timeout_seconds
                    ),
                    max_retries=remote_data.get(
                        "max_retries", config.remote.max_retries
                    ),
                    backoff_base_seconds=remote_data.get(
                        "backoff_base_seconds", config.remote.backoff_base_seconds
                    ),
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    interval_seconds=sync_data.get(
                        "interval_seconds", config.sync.interval_seconds
                    ),
                    max_attempts=sync_data.get(
                        "max_attempts", config.sync.max_attempts
                    ),
                    start_online=sync_data.get(
                        "start_online", config.sync.start_online
                    ),
                )

    return _apply_env_overrides(config)
