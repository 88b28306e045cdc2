"""Application settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ProviderAccount

PROJECT_ROOT = Path(__file__).resolve().parents[3]

# Account id reserved for the service-wide provider account built from settings.
SERVICE_ACCOUNT_ID = 0


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "fitplan-orchestrator"
    app_env: str = "dev"
    database_url: str = ""
    max_retries: int = Field(default=3, ge=0)
    retry_delay_s: float = Field(default=5.0, ge=0.0)
    provider_timeout_s: float = Field(default=60.0, ge=0.5)
    max_concurrent_generations: int = Field(default=10, ge=1)
    # Optional shared provider account used when a user has no default of their own.
    provider: str = ""
    provider_api_key: str = Field(default="", repr=False)
    provider_endpoint: str = ""
    provider_model: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="FITPLAN_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def service_account(self) -> ProviderAccount | None:
        if not self.provider or not self.provider_api_key:
            return None
        return ProviderAccount(
            account_id=SERVICE_ACCOUNT_ID,
            user_id=None,
            provider=self.provider,
            name="service default",
            api_endpoint=self.provider_endpoint,
            api_key=self.provider_api_key,
            model=self.provider_model,
            is_default=True,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
