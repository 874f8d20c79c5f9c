"""
Engine configuration settings.

Process-level settings (logging, exposure store backend, HTTP surface) are
loaded from the environment. Exam-level CAT settings travel with each exam
definition as a ``CATConfig`` (see ``cat_engine.schemas.cat``).
"""

from typing import Literal, Optional, Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "CAT Engine"
    APP_VERSION: str = "0.1.0"
    ENV: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # API
    API_V1_PREFIX: str = "/v1"

    # Exam definitions loaded into the in-process registry at startup.
    # JSON file with a list of {"exam_id", "config", "item_bank"} objects.
    EXAM_DEFINITIONS_PATH: Optional[str] = None

    # Exposure store
    # "memory" for a single process, "redis" when many workers share counters
    EXPOSURE_STORE: Literal["memory", "redis"] = "memory"
    EXPOSURE_REDIS_URL: str = "redis://localhost:6379/0"
    EXPOSURE_KEY_PREFIX: str = "cat:exposure:"
    EXPOSURE_MAX_RETRIES: int = Field(
        default=3,
        ge=1,
        description="Attempts at an atomic increment before giving up",
    )
    EXPOSURE_ALERT_THRESHOLD: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Exposure rate above which items are reported as overexposed",
    )

    model_config = SettingsConfigDict(
        env_prefix="CAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_log_level(self) -> Self:
        """Reject log levels the logging module does not know about."""
        valid = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
        if self.LOG_LEVEL.upper() not in valid:
            raise ValueError(
                f"LOG_LEVEL must be one of {sorted(valid)}, got {self.LOG_LEVEL}"
            )
        return self


settings = Settings()
