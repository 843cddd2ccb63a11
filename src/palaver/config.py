"""Configuration management for Palaver."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logging_utils import LogProfile, configure_logging

DEFAULT_SERVICE_URL = "https://smba.trafficmanager.net/teams/"


class Settings(BaseSettings):
    """Application settings."""

    # Bot credentials
    client_id: Optional[str] = Field(None, description="Bot application (client) id")
    client_secret: Optional[str] = Field(None, description="Bot application secret")
    tenant_id: Optional[str] = Field(None, description="Tenant the bot is registered in")

    # Channel Configuration
    service_url: str = Field(default=DEFAULT_SERVICE_URL, description="Default channel service URL")
    default_connection_name: str = Field(default="graph", description="OAuth connection used for sign-in")

    # Streaming Configuration
    stream_debounce_seconds: float = Field(default=0.5, gt=0, description="Quiet period before a stream flush")
    stream_batch_size: int = Field(default=10, ge=1, description="Maximum fragments drained per flush")
    stream_close_poll_seconds: float = Field(default=0.05, gt=0, description="Poll interval while a stream drains")

    # Outbound Retry Configuration
    send_retry_attempts: int = Field(default=3, ge=1, description="Attempts per outbound stream send")
    send_retry_delay_seconds: float = Field(default=0.2, ge=0, description="Initial retry backoff")
    send_retry_max_delay_seconds: float = Field(default=2.0, ge=0, description="Retry backoff ceiling")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_profile: LogProfile = Field(default="default", description="Log profile (default, chat)")

    model_config = SettingsConfigDict(
        env_prefix="PALAVER_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id) and bool(self.client_secret)


def get_settings(**overrides: object) -> Settings:
    """Get application settings.

    Args:
        overrides: Explicit field values taking precedence over the environment

    Returns:
        Settings instance
    """
    # pydantic-settings loads the environment and the .env file itself
    settings = Settings(**overrides)  # type: ignore[arg-type]

    configure_logging(profile=settings.log_profile, level=settings.log_level)

    return settings
