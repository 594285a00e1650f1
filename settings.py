from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """settings loaded from FARMLEDGER_* environment variables (or .env)."""

    model_config = SettingsConfigDict(
        env_prefix="FARMLEDGER_",
        env_file=".env",
        extra="ignore",
    )

    # Database
    database_dsn: str = "dbname=farmledger user=farmledger password=secret host=localhost port=5432"

    # Payments
    stripe_secret_key: str = ""
    currency: str = "cad"
    payout_payment_method: str = "bank_transfer"
    connect_refresh_url: str = "https://freshfarmily.com/driver/onboarding/refresh"
    connect_return_url: str = "https://freshfarmily.com/driver/onboarding/complete"

    # Money rules
    default_tax_jurisdiction: str = "ON"
    platform_commission_rate: Decimal = Decimal("0.05")

    # Driver activity is bucketed by this zone (weekend / after-hours)
    local_timezone: str = "America/Toronto"

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
