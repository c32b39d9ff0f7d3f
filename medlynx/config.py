"""
Engine Configuration
====================

Module-level defaults are read from the environment. ``load_settings()``
loads a ``.env`` file (python-dotenv) and assembles an ``EngineSettings``
instance that is handed to the runtime explicitly.

Environment variables:
    SCHEDULER_TIMEZONE         -- IANA timezone for wall-clock dosing times (default: America/Chicago)
    DEFAULT_SNOOZE_MINUTES     -- Snooze length when the platform action has none (default: 10)
    NO_RESPONSE_GRACE_MINUTES  -- Auto-advance a fired slot after this many minutes (default: unset/disabled)
    MAX_SCHEDULED_ALARMS       -- Cap on concurrently scheduled alarms (default: unset/unlimited)
    MAINTENANCE_HOUR           -- Hour of the daily re-sync (default: 3)
    MAINTENANCE_MINUTE         -- Minute of the daily re-sync (default: 0)
    KV_BACKEND                 -- "memory" or "redis" (default: memory)
    REDIS_URL                  -- Redis connection string (default: redis://localhost:6379/0)
    REDIS_KEY_PREFIX           -- Namespace for Redis keys (default: medlynx:)
    LOG_LEVEL                  -- Logging verbosity (default: INFO)
"""

import logging
import os
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Literal, Optional, Union

import pytz
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from medlynx.services.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

SCHEDULER_TIMEZONE = os.getenv("SCHEDULER_TIMEZONE", "America/Chicago")
USER_TIMEZONE = pytz.timezone(SCHEDULER_TIMEZONE)

DEFAULT_SNOOZE_MINUTES = int(os.getenv("DEFAULT_SNOOZE_MINUTES", "10"))

MAINTENANCE_HOUR = int(os.getenv("MAINTENANCE_HOUR", "3"))
MAINTENANCE_MINUTE = int(os.getenv("MAINTENANCE_MINUTE", "0"))

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_KEY_PREFIX = os.getenv("REDIS_KEY_PREFIX", "medlynx:")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def _optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(
            message=f"{name} must be an integer, got {raw!r}",
            config_key=name,
            original_error=e,
        ) from e


def local_today(tz: Optional[pytz.BaseTzInfo] = None) -> date:
    """Calendar day in the scheduling timezone (default: USER_TIMEZONE), not the host's."""
    return datetime.now(tz or USER_TIMEZONE).date()


# =============================================================================
# Settings Model
# =============================================================================

class EngineSettings(BaseModel):
    """Process-wide engine settings, passed explicitly to the runtime."""

    timezone: str = Field(
        default=SCHEDULER_TIMEZONE,
        description="IANA timezone used to localize times of day",
    )
    default_snooze_minutes: int = Field(
        default=DEFAULT_SNOOZE_MINUTES,
        gt=0,
        description="Snooze length used when the platform action carries none",
    )
    no_response_grace_minutes: Optional[int] = Field(
        default=None,
        gt=0,
        description="Minutes after a firing before the slot auto-advances; None disables",
    )
    max_scheduled_alarms: Optional[int] = Field(
        default=None,
        gt=0,
        description="Concurrent-alarm cap enforced by the in-process port; None is unlimited",
    )
    maintenance_hour: int = Field(default=MAINTENANCE_HOUR, ge=0, le=23)
    maintenance_minute: int = Field(default=MAINTENANCE_MINUTE, ge=0, le=59)
    kv_backend: Literal["memory", "redis"] = Field(default="memory")
    redis_url: str = Field(default=REDIS_URL)
    redis_key_prefix: str = Field(default=REDIS_KEY_PREFIX)
    log_level: str = Field(default=LOG_LEVEL)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Ensure the timezone name is known to pytz."""
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def tz(self) -> pytz.BaseTzInfo:
        return pytz.timezone(self.timezone)


def load_settings(env_file: Optional[Union[str, Path]] = None) -> EngineSettings:
    """
    Load ``.env`` (if present) and build EngineSettings from the environment.

    Args:
        env_file: Optional explicit path to a .env file

    Returns:
        EngineSettings instance

    Raises:
        ConfigurationError: If a variable holds an invalid value
    """
    if env_file is not None:
        load_dotenv(dotenv_path=env_file, override=True)
    else:
        load_dotenv()

    try:
        return EngineSettings(
            timezone=os.getenv("SCHEDULER_TIMEZONE", "America/Chicago"),
            default_snooze_minutes=int(os.getenv("DEFAULT_SNOOZE_MINUTES", "10")),
            no_response_grace_minutes=_optional_int("NO_RESPONSE_GRACE_MINUTES"),
            max_scheduled_alarms=_optional_int("MAX_SCHEDULED_ALARMS"),
            maintenance_hour=int(os.getenv("MAINTENANCE_HOUR", "3")),
            maintenance_minute=int(os.getenv("MAINTENANCE_MINUTE", "0")),
            kv_backend=os.getenv("KV_BACKEND", "memory").strip().lower(),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            redis_key_prefix=os.getenv("REDIS_KEY_PREFIX", "medlynx:"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
    except ConfigurationError:
        raise
    except ValueError as e:
        # pydantic's ValidationError subclasses ValueError
        raise ConfigurationError(
            message=f"Invalid engine configuration: {e}",
            original_error=e,
        ) from e


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the standard log format to the root logger."""
    level_name = (level or LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        stream=sys.stdout,
    )
