"""
Configuration

Settings are loaded from environment variables (and an optional .env file)
through pydantic-settings, then optionally overlaid from a YAML file.
The resulting MonitorSettings object is passed explicitly to every component.
"""

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigError

DEFAULT_MESSAGE_BODY = "Did you forget to close the garage door?"

# Value the ingestion endpoint compares against (case-insensitive)
CLOSED_STATE = "closed"


@dataclass(frozen=True)
class EntityId:
    """Compound entity key (entity kind + entity name)"""
    kind: str
    name: str

    def __str__(self) -> str:
        return f"@{self.kind.lower()}@{self.name}"


class MonitorSettings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Create a .env file with:
    - TWILIO_ACCOUNT_SID=ACxxxxxxxx
    - TWILIO_ACCOUNT_TOKEN=your-auth-token
    - TWILIO_FROM_NUMBER=+15550001111
    - TWILIO_TO_NUMBER=+15552223333
    - TIMER_DELAY_MINUTES=2
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Workflow
    timer_delay_minutes: float = Field(default=2, ge=0)
    max_retries: int = Field(default=10, ge=0)

    # Sensor entity identity
    entity_kind: str = "GarageDoor"
    entity_name: str = "Status"

    # Twilio
    twilio_account_sid: str = ""
    twilio_account_token: str = ""
    twilio_from_number: str = ""
    twilio_to_number: str = ""
    twilio_api_base: str = "https://api.twilio.com/2010-04-01"
    message_body: str = DEFAULT_MESSAGE_BODY
    notify_timeout_seconds: float = 10.0

    # Storage
    db_path: Path = Field(
        default=Path("data/garage_monitor.db"),
        validation_alias="GARAGE_MONITOR_DB_PATH",
    )

    # Ingress auth; empty disables the check
    function_key: str = ""

    # Logging
    log_level: str = Field(default="INFO", validation_alias="GARAGE_MONITOR_LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="GARAGE_MONITOR_LOG_FORMAT")

    @property
    def entity_id(self) -> EntityId:
        """Key of the monitored sensor entity"""
        return EntityId(self.entity_kind, self.entity_name)

    @property
    def timer_delay(self) -> timedelta:
        return timedelta(minutes=self.timer_delay_minutes)


def _flatten(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested YAML sections: {"twilio": {"account_sid": x}} -> {"twilio_account_sid": x}"""
    flat: dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}_{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(_flatten(value, name))
        else:
            flat[name] = value
    return flat


def load_settings(config_path: str | Path | None = None, **overrides: Any) -> MonitorSettings:
    """
    Load settings from the environment, overlaid with a YAML file if given.

    The YAML path falls back to GARAGE_MONITOR_CONFIG. Nested sections are
    flattened, so

        twilio:
          account_sid: ACxxxx
        timer_delay_minutes: 5

    sets twilio_account_sid and timer_delay_minutes. Keyword overrides win over
    both the file and the environment.

    Raises:
        ConfigError: if the file is missing, unparsable, or holds invalid values
    """
    config_path = config_path or os.environ.get("GARAGE_MONITOR_CONFIG")
    file_values: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"configuration file not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"error parsing {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"{path} must contain a mapping at the top level")
        file_values = _flatten(raw)

    # Environment beats file: only keep file values the environment does not set
    env_names = {k.upper() for k in os.environ}
    aliases = {
        "db_path": "GARAGE_MONITOR_DB_PATH",
        "log_level": "GARAGE_MONITOR_LOG_LEVEL",
        "log_format": "GARAGE_MONITOR_LOG_FORMAT",
    }
    values: dict[str, Any] = {}
    for name, value in file_values.items():
        if name not in MonitorSettings.model_fields:
            continue
        if aliases.get(name, name.upper()) in env_names:
            continue
        values[name] = value
    values.update(overrides)

    try:
        return MonitorSettings(**values)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
