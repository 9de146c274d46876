"""Configuration system for Operata Wallet.

Loads the service config from `.operata/config.yaml`, supports environment
variable expansion so secrets (Notion tokens, the vault master secret) can
stay out of the file.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    If the variable is not set the placeholder is left as-is so that
    validation can catch it later.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Walk an arbitrary nested structure and expand env vars in strings."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


def is_unexpanded(value: str) -> bool:
    """Return True if *value* still contains a ``${VAR}`` placeholder."""
    return bool(_ENV_VAR_RE.search(value))


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    """Webhook HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = 8080
    webhook_secret: str = ""  # ${NOTION_WEBHOOK_SECRET}; empty disables signature checks


class NotionConfig(BaseModel):
    """Notion REST API settings."""

    api_base: str = "https://api.notion.com/v1"
    api_version: str = "2022-06-28"
    timeout_seconds: float = 30.0
    sweep_page_size: int = 25  # pages re-ingested on a database.updated event


class ChainConfig(BaseModel):
    """EVM network settings."""

    default_chain: str = "sepolia"
    rpc_urls: dict[str, str] = Field(default_factory=dict)  # per-chain RPC override
    receipt_timeout_seconds: float = 120.0


class BackoffConfig(BaseModel):
    type: str = "exponential"
    delay_ms: int = 10_000


class QueueConfig(BaseModel):
    """Delayed job broker settings."""

    name: str = "scheduled-transactions"
    concurrency: int = 5
    attempts: int = 6
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    lock_duration_seconds: float = 30.0
    stalled_interval_seconds: float = 30.0
    poll_interval_seconds: float = 0.5


class VaultConfig(BaseModel):
    """Key custody settings."""

    master_secret: str = "${OPERATA_ENCRYPTION_KEY}"


class MonitorConfig(BaseModel):
    """Background wallet scans."""

    balance_sync_enabled: bool = True
    balance_sync_interval_seconds: float = 30.0
    transaction_poll_enabled: bool = True
    transaction_poll_interval_seconds: float = 30.0
    max_blocks_per_scan: int = 50


class AppConfig(BaseModel):
    """Root configuration object for the service."""

    database_path: Optional[str] = None  # defaults to <data dir>/operata.db
    log_level: str = "INFO"
    server: ServerConfig = Field(default_factory=ServerConfig)
    notion: NotionConfig = Field(default_factory=NotionConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    monitors: MonitorConfig = Field(default_factory=MonitorConfig)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def get_data_dir(base: Path | None = None, *, create: bool = True) -> Path:
    """Return the ``.operata/`` data directory.

    Parameters
    ----------
    base:
        Parent directory that contains (or will contain) the data folder.
        Defaults to the current working directory.
    create:
        If *True* (default), create the directory if it doesn't exist.
    """
    if base is None:
        base = Path.cwd()
    data_dir = base / ".operata"
    if create:
        data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def resolve_database_path(config: AppConfig, data_dir: Path) -> Path:
    """Return the SQLite file path for *config*."""
    if config.database_path:
        return Path(config.database_path)
    return data_dir / "operata.db"


def load_config(path: Path) -> AppConfig:
    """Load and validate a configuration from a YAML file.

    Environment variable placeholders (``${VAR}``) are expanded before
    validation.
    """
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    return AppConfig.model_validate(expanded)


def save_config(config: AppConfig, path: Path) -> None:
    """Serialize an :class:`AppConfig` to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
