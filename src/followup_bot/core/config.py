"""
Process settings read from the environment (and a local ``.env`` file).

These are deployment knobs: where data lives, which bot instance this is, how
often the loops run. Business rules (window, limits, messages) live in
:class:`~followup_bot.core.models.BotConfig` and are editable at runtime.
"""
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from followup_bot.messaging.handles import DEFAULT_COUNTRY_CODE


class Settings(BaseModel):
    """Environment-derived settings for one bot process."""
    data_dir: Path = Path("data")
    bot_id: str = "v1"
    tick_interval_seconds: float = Field(default=5.0, gt=0)
    queue_poll_seconds: float = Field(default=1.0, gt=0)
    min_delay_ms: int = Field(default=1200, ge=0)
    max_delay_ms: int = Field(default=2800, ge=0)
    send_timeout_seconds: float = Field(default=30.0, gt=0)
    default_country_code: str = DEFAULT_COUNTRY_CODE
    log_level: str = "INFO"

    @field_validator("bot_id")
    @classmethod
    def validate_bot_id(cls, v: str) -> str:
        v = v.strip()
        if not v or "/" in v or "\\" in v or v.startswith("."):
            raise ValueError(f"Invalid BOT_ID: {v!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return v.strip().upper() or "INFO"

    @property
    def bot_dir(self) -> Path:
        """Per-instance data directory (``<DATA_DIR>/<BOT_ID>``)."""
        return self.data_dir / self.bot_id


def load_settings(env_file: str | None = None) -> Settings:
    """
    Build :class:`Settings` from the process environment.

    Args:
        env_file: Optional ``.env`` path; the default lookup is used otherwise.
            Existing environment variables always win.

    Raises:
        pydantic.ValidationError: If a variable has an invalid value.
    """
    load_dotenv(env_file)
    defaults = Settings()
    return Settings(
        data_dir=Path(os.getenv("DATA_DIR", str(defaults.data_dir))),
        bot_id=os.getenv("BOT_ID", defaults.bot_id),
        tick_interval_seconds=os.getenv("TICK_INTERVAL_SECONDS", defaults.tick_interval_seconds),
        queue_poll_seconds=os.getenv("QUEUE_POLL_SECONDS", defaults.queue_poll_seconds),
        min_delay_ms=os.getenv("MIN_DELAY_MS", defaults.min_delay_ms),
        max_delay_ms=os.getenv("MAX_DELAY_MS", defaults.max_delay_ms),
        send_timeout_seconds=os.getenv("SEND_TIMEOUT_SECONDS", defaults.send_timeout_seconds),
        default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", defaults.default_country_code),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level),
    )
