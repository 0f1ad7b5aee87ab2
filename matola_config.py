"""
Matola - Configuration
Environment-driven settings for the enforcement layer.

Secrets (webhook keys, ledger signing key) come from the environment or a
.env file. get_settings() is cached: one settings instance per process.
"""

import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


class MatolaSettings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Logging
    LOG_LEVEL: str = "INFO"

    # Payment provider webhook secrets (unset = webhooks cannot be verified)
    AIRTEL_WEBHOOK_SECRET: Optional[str] = None
    TNM_WEBHOOK_SECRET: Optional[str] = None

    # Signing key for enforcement decisions
    DECISION_LEDGER_SECRET: str = "matola-ledger-dev-key-rotate-quarterly"

    # Business limits
    PAYMENT_TOLERANCE_MWK: float = Field(default=1.0, ge=0)
    MATCH_PRICE_INFLATION_LIMIT: float = Field(default=1.5, gt=1)
    PLATFORM_FEE_LIMIT: float = Field(default=0.10, ge=0, le=1)
    USSD_SESSION_TTL_SECONDS: int = Field(default=300, gt=0)


@lru_cache
def get_settings() -> MatolaSettings:
    return MatolaSettings()


def configure_logging(settings: Optional[MatolaSettings] = None):
    """Apply the process-wide log format and level."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=LOG_FORMAT
    )
