"""Configuration management for peerwire.

Hierarchical loading from defaults → TOML config file → environment, validated
through the pydantic models in :mod:`peerwire.models`.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import toml

from peerwire.exceptions import ConfigurationError
from peerwire.logging_config import setup_logging
from peerwire.models import Config

logger = logging.getLogger(__name__)

_config_manager: ConfigManager | None = None

ENV_PREFIX = "PEERWIRE_"

ENV_MAPPINGS: dict[str, str] = {
    # Network
    "PEERWIRE_MAX_PEERS_PER_TORRENT": "network.max_peers_per_torrent",
    "PEERWIRE_PIPELINE_DEPTH": "network.pipeline_depth",
    "PEERWIRE_BLOCK_SIZE_KIB": "network.block_size_kib",
    "PEERWIRE_LISTEN_PORT": "network.listen_port",
    "PEERWIRE_CONNECTION_TIMEOUT": "network.connection_timeout",
    "PEERWIRE_HANDSHAKE_TIMEOUT": "network.handshake_timeout",
    "PEERWIRE_REQUEST_TIMEOUT": "network.request_timeout",
    "PEERWIRE_KEEP_ALIVE_INTERVAL": "network.keep_alive_interval",
    "PEERWIRE_PEER_TIMEOUT": "network.peer_timeout",
    # Strategy
    "PEERWIRE_ENDGAME_DUPLICATES": "strategy.endgame_duplicates",
    "PEERWIRE_RANDOM_FIRST_PIECE": "strategy.random_first_piece",
    # Choking
    "PEERWIRE_UNCHOKE_INTERVAL": "choking.unchoke_interval",
    "PEERWIRE_UPLOAD_SLOTS": "choking.upload_slots",
    "PEERWIRE_OPTIMISTIC_UNCHOKE_TICKS": "choking.optimistic_unchoke_ticks",
    # Security
    "PEERWIRE_HASH_FAILURE_THRESHOLD": "security.hash_failure_threshold",
    # Disk
    "PEERWIRE_DOWNLOAD_DIR": "disk.download_dir",
    "PEERWIRE_HASH_WORKERS": "disk.hash_workers",
    # Observability
    "PEERWIRE_LOG_LEVEL": "observability.log_level",
    "PEERWIRE_LOG_FILE": "observability.log_file",
    "PEERWIRE_STRUCTURED_LOGGING": "observability.structured_logging",
}


def _parse_env_value(raw: str) -> bool | int | float | str:
    low = raw.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_file: str | Path | None = None, configure_logging: bool = True):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for peerwire.toml
            configure_logging: Apply the observability section to the logging tree
        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        if configure_logging:
            self._setup_logging()

    def _find_config_file(self, config_file: str | Path | None) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            path = Path(config_file)
            if not path.exists():
                msg = f"Config file not found: {path}"
                raise ConfigurationError(msg, {"path": str(path)})
            return path

        search_paths = [
            Path.cwd() / "peerwire.toml",
            Path.home() / ".config" / "peerwire" / "peerwire.toml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg, {"path": str(self.config_file)}) from e

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw))
        return env_config

    def _merge_config(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def export(self) -> str:
        """Export current configuration as TOML."""
        return toml.dumps(self.config.model_dump(mode="json", exclude_none=True))

    def _setup_logging(self) -> None:
        """Set up logging configuration."""
        setup_logging(self.config.observability)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(configure_logging=False)
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    logger.debug("Configuration loaded from %s", _config_manager.config_file or "defaults")
    return _config_manager


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime.

    Components snapshot the configuration when they are constructed; only
    components created afterwards see the new values.
    """
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(configure_logging=False)
    _config_manager.config = new_config


def reset_config() -> None:
    """Drop the global configuration so the next access reloads it."""
    global _config_manager
    _config_manager = None
