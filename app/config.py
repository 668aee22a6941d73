from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime settings, read from NANNY_LEDGER_* environment variables or .env.
    """

    model_config = SettingsConfigDict(
        env_prefix="NANNY_LEDGER_",
        env_file=".env",
        extra="ignore",
    )

    environment: Literal["development", "test", "production"] = "development"
    log_level: str = "INFO"
    # wipes payments and reverts approvals; never honoured in production
    allow_destructive_resets: bool = False

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def destructive_resets_enabled(self) -> bool:
        return self.allow_destructive_resets and not self.is_production
