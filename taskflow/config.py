"""
Configuration

Settings are read from environment variables with an optional YAML overlay
file (TASKFLOW_CONFIG_FILE). Environment always wins over the file, and the
file wins over the defaults below.

All date arithmetic in the engine uses a single configured timezone
baseline (TASKFLOW_TIMEZONE). Timestamps are stored as naive local times in
that zone.
"""

import logging
import os
from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any
from zoneinfo import ZoneInfo

import yaml

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_DATABASE_URL = "sqlite:///taskflow.db"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_LOG_FILE = "/var/log/taskflow-bot.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# env var -> (settings field, type)
ENV_KEYS: Dict[str, tuple] = {
    "TELEGRAM_BOT_TOKEN": ("telegram_bot_token", str),
    "DATABASE_URL": ("database_url", str),
    "TASKFLOW_TIMEZONE": ("timezone", str),
    "LOG_LEVEL": ("log_level", str),
    "TASKFLOW_LOG_FILE": ("log_file", str),
    "WIZARD_IDLE_TIMEOUT_MINUTES": ("wizard_idle_timeout_minutes", int),
    "PROCESSED_INTERACTIONS_LIMIT": ("processed_interactions_limit", int),
    "REMINDER_INTERVAL_SECONDS": ("reminder_interval_seconds", int),
    "API_HOST": ("api_host", str),
    "API_PORT": ("api_port", int),
    "PUBLIC_BASE_URL": ("public_base_url", str),
}


@dataclass
class Settings:
    """Runtime settings for the bot, the engine and the REST slice."""
    telegram_bot_token: str = ""
    database_url: str = DEFAULT_DATABASE_URL
    timezone: str = DEFAULT_TIMEZONE
    log_level: str = "INFO"
    log_file: str = DEFAULT_LOG_FILE
    wizard_idle_timeout_minutes: int = 30
    processed_interactions_limit: int = 50
    reminder_interval_seconds: int = 900
    api_host: str = "127.0.0.1"
    api_port: int = 8002
    public_base_url: str = ""

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def now(self) -> datetime:
        """Current wall-clock time in the configured zone, as a naive datetime."""
        return datetime.now(self.tz).replace(tzinfo=None)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["telegram_bot_token"] = "***" if self.telegram_bot_token else ""
        return data


def _load_yaml_overlay(path: Optional[str]) -> Dict[str, Any]:
    """Read the optional YAML overlay. Missing file means no overrides."""
    if not path:
        return {}
    config_path = Path(path)
    if not config_path.exists():
        logging.getLogger("config").warning(f"Config file not found: {config_path}")
        return {}
    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return data


def load_settings(environ: Optional[Dict[str, str]] = None) -> Settings:
    """Build Settings from defaults, the YAML overlay, then the environment."""
    environ = os.environ if environ is None else environ
    settings = Settings()
    valid_fields = {f.name for f in fields(Settings)}

    for key, value in _load_yaml_overlay(environ.get("TASKFLOW_CONFIG_FILE")).items():
        if key in valid_fields:
            setattr(settings, key, value)

    for env_key, (field_name, cast) in ENV_KEYS.items():
        raw = environ.get(env_key)
        if raw is None or raw == "":
            continue
        try:
            setattr(settings, field_name, cast(raw))
        except ValueError as e:
            logging.getLogger("config").warning(f"Invalid value for {env_key}: {e}")

    # Fail fast on an unknown zone
    ZoneInfo(settings.timezone)
    return settings


# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
def configure_logging(settings: Settings) -> None:
    """Install console and (when writable) file handlers on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console_handler)

    if settings.log_file:
        try:
            file_handler = logging.FileHandler(settings.log_file)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(file_handler)
        except (PermissionError, FileNotFoundError):
            pass


# Global instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the settings instance."""
    global _settings

    if _settings is None:
        _settings = load_settings()

    return _settings
