"""Settings loaded once from the environment and .env file."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    BATCH_SIZE,
    CONFIDENCE_THRESHOLD,
    DEFAULT_IMAP_HOST,
    DEFAULT_IMAP_PORT,
    DEFAULT_OPENAI_MODEL,
    DELETE_FROM_ADVERTISING_DAYS,
    MAX_EMAIL_AGE_DAYS,
)

PROVIDER_IMAP = "imap"
PROVIDER_GMAIL = "gmail"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Mailbox
    email_provider: Literal["imap", "gmail"] | None = None
    email_user: str = ""
    email_password: str = ""
    imap_host: str = DEFAULT_IMAP_HOST
    imap_port: int = DEFAULT_IMAP_PORT
    imap_tls: bool = True

    # Processing
    batch_size: int = Field(default=BATCH_SIZE, gt=0)
    max_email_age_days: int = Field(default=MAX_EMAIL_AGE_DAYS, gt=0)
    delete_from_advertising_days: int = Field(default=DELETE_FROM_ADVERTISING_DAYS, ge=0)
    dry_run: bool = False

    # OpenAI
    openai_api_key: str = ""
    openai_model: str = DEFAULT_OPENAI_MODEL
    classification_confidence_threshold: float = Field(default=CONFIDENCE_THRESHOLD, ge=0.0, le=1.0)

    log_level: str = "INFO"

    @property
    def provider(self) -> str:
        """Configured provider, or gmail when the host looks like Gmail."""
        if self.email_provider:
            return self.email_provider
        return PROVIDER_GMAIL if "gmail" in self.imap_host.lower() else PROVIDER_IMAP

    def missing_credentials(self, require_openai: bool = True) -> list[str]:
        """Names of required environment variables that are empty."""
        missing = []
        if not self.email_user:
            missing.append("EMAIL_USER")
        if not self.email_password:
            missing.append("EMAIL_PASSWORD")
        if require_openai and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        return missing


def load_settings(env_file: str | None = None, **overrides) -> Settings:
    """Build the settings for one process.

    Values passed in ``overrides`` (e.g. from CLI options) win over the
    environment; ``None`` values are ignored.
    """
    values = {key: value for key, value in overrides.items() if value is not None}
    if env_file is not None:
        return Settings(_env_file=env_file, **values)
    return Settings(**values)
