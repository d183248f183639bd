"""Configuration management for switchboard.

Loads ``settings.yaml`` and ``.env`` from a config directory into a
typed Config object. Property getters provide safe access with sensible
defaults for every subsystem: command prefix, owner list, command and
event sources, plugins, persistence, diagnostics and logging.

Library components never reach for the global instance; the Bot pulls
values out of a Config and hands them to the registry, dispatcher and
plugin manager at construction.

Key classes:
    Config: Central configuration manager.

Key functions:
    get_config: Singleton accessor used by the console entry point.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

import structlog
import yaml
from dotenv import load_dotenv

logger = structlog.get_logger("switchboard.bot")

DEFAULT_PREFIX = "!"


class Config:
    """Central configuration manager for switchboard.

    Args:
        config_dir: Path to the config directory. Defaults to
            ``<cwd>/config/``.
        settings: Pre-parsed settings dict. When given, settings.yaml is
            not read (used by tests and embedding hosts).
    """

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        settings: Optional[dict] = None,
    ):
        if config_dir is None:
            config_dir = Path.cwd() / "config"
        self.config_dir = Path(config_dir)

        env_file = self.config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        if settings is not None:
            self.settings = dict(settings)
        else:
            self.settings = self._load_yaml("settings.yaml")

    def _load_yaml(self, filename: str) -> dict:
        """Load a YAML configuration file."""
        filepath = self.config_dir / filename
        if filepath.exists():
            with open(filepath, "r") as f:
                return yaml.safe_load(f) or {}
        return {}

    def _path(self, key: str, default: Path) -> Path:
        configured = self.settings.get(key)
        if configured:
            return Path(configured).expanduser()
        return default

    def validate(self):
        """Validate critical settings at startup.

        Logs warnings/errors but does not raise -- the bot starts with
        defaults for anything malformed.
        """
        prefix = self.settings.get("prefix")
        if prefix is not None and (not isinstance(prefix, str) or not prefix.strip()):
            logger.error("config_invalid_value", key="prefix", value=prefix)

        owners = self.settings.get("owner_ids", [])
        if not isinstance(owners, list):
            logger.error("owner_ids_invalid_type", type=type(owners).__name__)
        elif not self.owner_ids:
            logger.warning("no_owner_ids", msg="owner_only commands will reject everyone")

        allowlist = self.settings.get("plugin_allowlist")
        if allowlist is not None and not isinstance(allowlist, list):
            logger.error("plugin_allowlist_invalid_type", type=type(allowlist).__name__)

        notices = self.settings.get("notices", {})
        if not isinstance(notices, dict):
            logger.error("notices_invalid_type", type=type(notices).__name__)

    # --- Dispatch ---

    @property
    def prefix(self) -> str:
        """Default text-command prefix (guilds may override it at runtime)."""
        prefix = self.settings.get("prefix", DEFAULT_PREFIX)
        if not isinstance(prefix, str) or not prefix.strip():
            return DEFAULT_PREFIX
        return prefix

    @property
    def owner_ids(self) -> List[str]:
        """Actor ids allowed through owner_only commands.

        ``BOT_OWNER_ID`` from the environment is appended when set.
        """
        owners = self.settings.get("owner_ids", [])
        if not isinstance(owners, list):
            owners = []
        result = [str(o) for o in owners]
        env_owner = os.environ.get("BOT_OWNER_ID")
        if env_owner and env_owner not in result:
            result.append(env_owner)
        return result

    @property
    def diagnostic_channel_id(self) -> Optional[str]:
        """Channel that receives command error reports. Env var BOT_LOG_CHANNEL takes precedence."""
        value = os.environ.get("BOT_LOG_CHANNEL") or self.settings.get("diagnostic_channel_id")
        return str(value) if value else None

    @property
    def diagnostic_webhook_url(self) -> Optional[str]:
        """Webhook URL for error reports. Env var BOT_LOG_WEBHOOK takes precedence."""
        return os.environ.get("BOT_LOG_WEBHOOK") or self.settings.get("diagnostic_webhook_url")

    @property
    def notices(self) -> Dict[str, str]:
        """Overrides for user-visible dispatcher notices, keyed by notice name."""
        notices = self.settings.get("notices", {})
        if not isinstance(notices, dict):
            return {}
        return {str(k): str(v) for k, v in notices.items()}

    # --- Sources ---

    @property
    def commands_dir(self) -> Optional[Path]:
        """Directory of command modules, or None to skip file loading."""
        configured = self.settings.get("commands_dir")
        return Path(configured).expanduser() if configured else None

    @property
    def events_dir(self) -> Optional[Path]:
        """Directory of event modules, or None to skip file loading."""
        configured = self.settings.get("events_dir")
        return Path(configured).expanduser() if configured else None

    @property
    def plugins_dir(self) -> Path:
        """Get plugins directory path."""
        return self._path("plugins_dir", self.config_dir.parent / "plugins")

    @property
    def plugin_allowlist(self) -> Optional[List[str]]:
        """If set, only these plugin directories are loaded."""
        allowlist = self.settings.get("plugin_allowlist")
        if allowlist is None or not isinstance(allowlist, list):
            return None
        return [str(name) for name in allowlist]

    @property
    def plugin_settings(self) -> Dict[str, dict]:
        """Static per-plugin sections from ``plugins.<name>`` in settings.yaml."""
        sections = self.settings.get("plugins", {})
        if not isinstance(sections, dict):
            return {}
        return {str(k): v for k, v in sections.items() if isinstance(v, dict)}

    # --- Storage ---

    @property
    def data_dir(self) -> Path:
        """Directory holding the JSON key/value store."""
        return self._path("data_dir", self.config_dir.parent / "data")

    @property
    def store_file(self) -> Path:
        """JSON file backing the key/value store."""
        return self.data_dir / self.settings.get("store_file", "botdata.json")

    # --- Logging ---

    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        return self._path("log_dir", self.config_dir.parent / "logs")

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO). Controls console and combined file."""
        log_config = self.settings.get("logging", {})
        return log_config.get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Per-subsystem log level overrides. E.g. {"dispatch": "DEBUG"}."""
        log_config = self.settings.get("logging", {})
        return log_config.get("subsystem_levels", {})

    @property
    def logging_max_file_size_mb(self) -> int:
        """Max size per log file in MB before rotation (default 10)."""
        log_config = self.settings.get("logging", {})
        return log_config.get("max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        """Number of rotated log files to keep (default 5)."""
        log_config = self.settings.get("logging", {})
        return log_config.get("backup_count", 5)


_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
