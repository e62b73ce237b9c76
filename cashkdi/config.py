"""
Cashkdi Configuration Module

Loads environment variables for the payment orchestration service.
Settings are built once at startup and handed to each component.
"""
from functools import lru_cache
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderSettings(BaseModel):
    """Credentials and limits for one payment provider."""

    enabled: bool = True
    api_url: str = "https://api.example.com"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    webhook_secret: Optional[str] = None
    subscription_key: Optional[str] = None  # MTN MoMo Ocp-Apim-Subscription-Key
    target_environment: str = "sandbox"  # MTN MoMo X-Target-Environment
    test_mode: bool = True
    timeout_seconds: float = 30.0
    currencies: List[str] = Field(default_factory=lambda: ["XOF", "XAF"])
    min_amount: int = 100  # minor units
    max_amount: int = 1_000_000_000  # minor units
    phone_country_codes: List[str] = Field(default_factory=list)


def _default_providers() -> Dict[str, ProviderSettings]:
    mobile_money_codes = ["221", "223", "224", "225", "226", "227", "228", "229", "237"]
    return {
        "orange-money": ProviderSettings(
            api_url="https://api.orange.com",
            webhook_secret="orange_webhook_secret_change_me",
            currencies=["XOF", "XAF"],
            phone_country_codes=mobile_money_codes,
        ),
        "mtn-momo": ProviderSettings(
            api_url="https://sandbox.momodeveloper.mtn.com",
            webhook_secret="mtn_webhook_secret_change_me",
            currencies=["XOF", "XAF", "EUR"],
            phone_country_codes=mobile_money_codes,
        ),
        "cards": ProviderSettings(
            api_url="https://api.cards.example.com",
            webhook_secret="cards_webhook_secret_change_me",
            currencies=["XOF", "XAF", "EUR", "USD"],
            min_amount=50,
        ),
    }


class WebhookSettings(BaseModel):
    """Inbound webhook verification and retry policy."""

    verify_signatures: bool = True
    tolerance_seconds: int = 300
    timestamp_header: str = "X-Webhook-Timestamp"
    max_retry_attempts: int = 5
    retry_delay_minutes: int = 5
    # Explicit per-attempt delays; when set they replace the linear policy
    retry_delays_minutes: List[int] = Field(default_factory=list)
    ignored_event_types: List[str] = Field(default_factory=lambda: ["ping", "webhook.test"])

    @model_validator(mode="after")
    def delays_non_decreasing(self) -> "WebhookSettings":
        delays = self.retry_delays_minutes
        if any(later < earlier for earlier, later in zip(delays, delays[1:])):
            raise ValueError("retry_delays_minutes must be non-decreasing")
        if any(delay < 0 for delay in delays) or self.retry_delay_minutes < 0:
            raise ValueError("retry delays cannot be negative")
        return self


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Nested values use a double underscore (CASHKDI_WEBHOOKS__MAX_RETRY_ATTEMPTS=3).
    Provider names contain dashes, so provider settings are supplied as a JSON
    object in CASHKDI_PROVIDERS.
    """

    app_name: str = "Cashkdi Payments"
    environment: Literal["sandbox", "production"] = "sandbox"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./cashkdi.db"

    # Payments
    default_provider: str = "orange-money"
    payment_timeout_minutes: int = 30
    reference_prefix: str = "CKD_"
    reference_length: int = 12
    reference_max_attempts: int = 5

    providers: Dict[str, ProviderSettings] = Field(default_factory=_default_providers)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)

    # API keys
    api_key_pepper: str = "api_key_pepper_change_me"
    rate_limit: int = 1000
    rate_limit_window_seconds: int = 3600

    # Log masking
    sensitive_fields: List[str] = Field(
        default_factory=lambda: [
            "api_key",
            "api_secret",
            "secret",
            "token",
            "pay_token",
            "notif_token",
            "password",
            "pin",
            "card_number",
            "cvv",
            "authorization",
            "x-api-key",
        ]
    )

    # Retention
    retention_days: int = 30

    # Background jobs
    scheduler_enabled: bool = True
    expiry_sweep_interval_minutes: int = 1
    status_sync_interval_minutes: int = 5
    webhook_retry_interval_minutes: int = 1
    cleanup_interval_hours: int = 24
    batch_limit: int = 50

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="CASHKDI_",
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def production_requires_signatures(self) -> "Settings":
        if self.environment == "production" and not self.webhooks.verify_signatures:
            raise ValueError("Webhook signature verification cannot be disabled in production")
        if self.default_provider not in self.providers:
            raise ValueError(f"Default provider '{self.default_provider}' is not configured")
        return self

    def provider(self, name: str) -> Optional[ProviderSettings]:
        return self.providers.get(name)


@lru_cache
def get_settings() -> Settings:
    """Build the process-wide settings once."""
    return Settings()
