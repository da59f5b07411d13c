"""Settings loading: an INI file with environment variables as fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError


class Settings(BaseModel):
    """Runtime configuration of the bot."""

    model_config = ConfigDict(extra="forbid")

    telegram_token: str = Field(min_length=1)
    poll_timeout: int = Field(default=60, ge=0)
    allowed_chat_ids: List[int] = Field(default_factory=list)

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = Field(default=587, gt=0)
    smtp_user: str = Field(min_length=1)
    smtp_password: str = Field(min_length=1)
    smtp_use_tls: Optional[bool] = None
    sender: Optional[str] = None

    db_path: str = "botdata.db"
    attachments_dir: str = "attachments"

    poll_interval: float = Field(default=60.0, gt=0)
    timezone: Optional[str] = None

    log_delivery_activity: bool = False

    @property
    def from_address(self) -> str:
        return self.sender or self.smtp_user

    @property
    def tzinfo(self) -> Optional[ZoneInfo]:
        """Zone used for ``YYYY-MM-DD HH:MM`` times; ``None`` means system local."""
        if not self.timezone:
            return None
        return ZoneInfo(self.timezone)


def _parse_chat_ids(value: Optional[str]) -> List[int]:
    ids: List[int] = []
    for part in (value or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid chat id in allowed_chat_ids: {part!r}") from exc
    return ids


def load_settings(config_path: str | os.PathLike | None = None) -> Settings:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with MW_):
      MW_CONFIG - Path to config.ini file (default: config.ini)
      MW_TELEGRAM_TOKEN - Bot API token (required)
      MW_POLL_TIMEOUT - Long-polling timeout in seconds (default: 60)
      MW_ALLOWED_CHAT_IDS - Comma separated chat ids allowed to send (default: everyone)
      MW_SMTP_HOST - SMTP host (default: smtp.gmail.com)
      MW_SMTP_PORT - SMTP port (default: 587)
      MW_SMTP_USER - SMTP username, also the sender address (required)
      MW_SMTP_PASSWORD - SMTP password (required)
      MW_SMTP_USE_TLS - Implicit TLS (default: true only on port 465)
      MW_SENDER - From address when it differs from the SMTP username
      MW_DB_PATH - SQLite database path (default: botdata.db)
      MW_ATTACHMENTS_DIR - Directory for uploaded files (default: attachments)
      MW_SCHEDULER_INTERVAL - Scheduled worker interval in seconds (default: 60)
      MW_TIMEZONE - IANA zone for "YYYY-MM-DD HH:MM" times (default: system local)
      MW_LOG_DELIVERY_ACTIVITY - Log every delivery attempt (default: False)

    Config file sections/keys:
      [telegram] token, poll_timeout, allowed_chat_ids
      [smtp] host, port, user, password, use_tls, sender
      [storage] db_path, attachments_dir
      [scheduler] interval_seconds, timezone
      [logging] delivery_activity

    Raises:
        ConfigurationError: when required credentials are missing or a value
            cannot be converted.
    """
    path = Path(config_path or os.getenv("MW_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    raw = {
        "telegram_token": get("telegram", "token", os.getenv("MW_TELEGRAM_TOKEN")),
        "poll_timeout": get("telegram", "poll_timeout", os.getenv("MW_POLL_TIMEOUT")),
        "allowed_chat_ids": _parse_chat_ids(get("telegram", "allowed_chat_ids", os.getenv("MW_ALLOWED_CHAT_IDS"))),
        "smtp_host": get("smtp", "host", os.getenv("MW_SMTP_HOST")),
        "smtp_port": get("smtp", "port", os.getenv("MW_SMTP_PORT")),
        "smtp_user": get("smtp", "user", os.getenv("MW_SMTP_USER")),
        "smtp_password": get("smtp", "password", os.getenv("MW_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("smtp", "use_tls", os.getenv("MW_SMTP_USE_TLS")),
        "sender": get("smtp", "sender", os.getenv("MW_SENDER")),
        "db_path": get("storage", "db_path", os.getenv("MW_DB_PATH")),
        "attachments_dir": get("storage", "attachments_dir", os.getenv("MW_ATTACHMENTS_DIR")),
        "poll_interval": get("scheduler", "interval_seconds", os.getenv("MW_SCHEDULER_INTERVAL")),
        "timezone": get("scheduler", "timezone", os.getenv("MW_TIMEZONE")),
        "log_delivery_activity": get_bool("logging", "delivery_activity", os.getenv("MW_LOG_DELIVERY_ACTIVITY"), False),
    }
    # Unset optional values fall back to the model defaults.
    values = {key: value for key, value in raw.items() if value not in (None, "")}

    missing = [
        name
        for name, key in (("telegram token", "telegram_token"), ("SMTP user", "smtp_user"), ("SMTP password", "smtp_password"))
        if not values.get(key)
    ]
    if missing:
        raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")

    for key in ("db_path", "attachments_dir"):
        if key in values:
            values[key] = os.path.expanduser(values[key])

    try:
        settings = Settings(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc
    try:
        settings.tzinfo
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Unknown timezone: {settings.timezone}") from exc
    return settings
