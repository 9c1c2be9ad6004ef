"""Environment-driven configuration."""

import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError, ValidationInfo, ValidatorFunctionWrapHandler, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logger import logger

ENV_PREFIX = "WEBGEN_"


class Settings(BaseSettings):
    """
    Tunables for the vault, lifecycle manager and generation gateway.

    Every setting can be configured via environment variables with the prefix
    WEBGEN_, e.g. WEBGEN_MIN_REQUEST_INTERVAL=5. Invalid values are ignored
    with a warning and the default is kept.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_ignore_empty=True,
        extra="ignore",
    )

    storage_dir: Path = Field(
        default_factory=lambda: Path(os.path.expanduser("~")) / ".webgen" / "session",
        description="Directory holding the encrypted session store",
    )
    storage_encryption_key: str | None = Field(
        None, description="Fernet key overriding the machine-derived key"
    )
    refresh_buffer_seconds: float = Field(300.0, ge=0, description="Refresh lead time before expiry")
    refresh_max_attempts: int = Field(3, ge=1, description="Silent refresh attempts before re-login")
    refresh_backoff_seconds: float = Field(1.0, ge=0, description="Base delay between refresh attempts")
    min_request_interval: float = Field(2.0, ge=0, description="Seconds between distinct remote calls")
    max_retries: int = Field(3, ge=0, description="Retries for throttling and server errors")
    retry_backoff_seconds: float = Field(1.0, ge=0, description="Base delay for server-error retries")
    rate_limit_backoff_seconds: float = Field(30.0, ge=0, description="Delay after an unhinted 429")
    max_prompt_length: int = Field(2000, ge=1, description="Longest accepted prompt")
    log_level: str = Field("INFO", description="Logging level name")

    @field_validator("*", mode="wrap")
    @classmethod
    def fall_back_to_default(
        cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> Any:
        try:
            return handler(value)
        except ValidationError:
            default = cls.model_fields[info.field_name].get_default(call_default_factory=True)
            logger.warning(
                f"Invalid {ENV_PREFIX}{info.field_name.upper()} value: {value!r}, using default {default}"
            )
            return default

    @field_validator("storage_dir")
    @classmethod
    def expand_storage_dir(cls, v: Path) -> Path:
        return v.expanduser()

    @property
    def refresh_buffer(self) -> timedelta:
        return timedelta(seconds=self.refresh_buffer_seconds)

    @property
    def log_level_value(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO

    def ensure_storage_dir(self) -> Path:
        """Create the storage directory with owner-only permissions."""
        os.makedirs(self.storage_dir, exist_ok=True, mode=0o700)
        return self.storage_dir
