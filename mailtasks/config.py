from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError


class Config(BaseSettings):
    """
    Application configuration loaded from environment variables and .env file.

    Secrets are held as SecretStr so they never show up in reprs or logs.
    """

    # Data directory for the JSON store
    data_dir: Path = Field(default=Path("data"), alias="DATA_DIR")

    briefing_output_path: Path = Field(
        default=Path("data") / "briefing.md",
        alias="BRIEFING_OUTPUT_PATH",
    )

    # Token-at-rest encryption (64 hex chars)
    email_encryption_key: Optional[SecretStr] = Field(
        default=None,
        alias="EMAIL_ENCRYPTION_KEY",
    )

    # Google OAuth
    google_client_id: str = Field(default="", alias="GOOGLE_CLIENT_ID")
    google_client_secret: Optional[SecretStr] = Field(
        default=None,
        alias="GOOGLE_CLIENT_SECRET",
    )
    google_redirect_uri: str = Field(default="", alias="GOOGLE_REDIRECT_URI")

    # Microsoft OAuth
    microsoft_client_id: str = Field(default="", alias="MICROSOFT_CLIENT_ID")
    microsoft_client_secret: Optional[SecretStr] = Field(
        default=None,
        alias="MICROSOFT_CLIENT_SECRET",
    )
    microsoft_redirect_uri: str = Field(default="", alias="MICROSOFT_REDIRECT_URI")

    # LLM
    openai_api_key: Optional[SecretStr] = Field(default=None, alias="OPENAI_API_KEY")
    model_name: str = Field(default="gpt-4.1-mini", alias="MODEL_NAME")
    llm_base_url: str = Field(
        default="https://api.openai.com/v1/chat/completions",
        alias="LLM_BASE_URL",
    )
    llm_timeout_seconds: float = Field(default=60.0, alias="LLM_TIMEOUT_SECONDS")

    # Scanning
    scan_max_results: int = Field(default=20, alias="SCAN_MAX_RESULTS")
    scan_sweep_interval_hours: int = Field(
        default=3,
        alias="SCAN_SWEEP_INTERVAL_HOURS",
    )
    scan_max_workers: int = Field(default=1, alias="SCAN_MAX_WORKERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    def google_credentials(self) -> tuple[str, str, str]:
        """Return (client_id, client_secret, redirect_uri) or raise ConfigError."""
        secret = self.google_client_secret.get_secret_value() if self.google_client_secret else ""
        if not (self.google_client_id and secret and self.google_redirect_uri):
            raise ConfigError("Google OAuth credentials not configured")
        return self.google_client_id, secret, self.google_redirect_uri

    def microsoft_credentials(self) -> tuple[str, str, str]:
        """Return (client_id, client_secret, redirect_uri) or raise ConfigError."""
        secret = (
            self.microsoft_client_secret.get_secret_value()
            if self.microsoft_client_secret
            else ""
        )
        if not (self.microsoft_client_id and secret and self.microsoft_redirect_uri):
            raise ConfigError("Microsoft OAuth credentials not configured")
        return self.microsoft_client_id, secret, self.microsoft_redirect_uri


def load_config() -> "Config":
    return Config()
