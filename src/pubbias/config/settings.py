"""Configuration management using Pydantic Settings."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Only ambient concerns live here (logging and console display).  Analysis
    options are passed explicitly at call time via
    :class:`pubbias.core.models.TrimFillOptions`.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PUBBIAS_",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = Field("INFO")
    log_format: str = Field("json", pattern="^(json|text)$")

    # Console display
    display_digits: int = Field(4, ge=0, le=12, description="Decimal places in CLI tables")
    console_width: Optional[int] = Field(None, ge=40, description="Fixed console width for rich output")


# Instantiate global settings
settings = Settings()
