# backend/bookingflow/core/config.py
import logging
import os
from typing import Annotated, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

load_dotenv()


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


class Settings(BaseSettings):
    environment: Literal["development", "test", "staging", "production"] = Field(
        default="development", description="Deployment environment name"
    )
    database_url: str = Field(
        default="sqlite+pysqlite:///./bookingflow.db",
        description="SQLAlchemy database URL (Postgres in production)",
    )
    redis_url: Optional[str] = Field(default=None, description="Redis URL for the Celery broker")

    # Stripe
    stripe_secret_key: Optional[SecretStr] = Field(default=None, description="Stripe secret key")
    stripe_webhook_secret: Optional[SecretStr] = Field(
        default=None, description="Signing secret for the payment-events webhook"
    )
    stripe_currency: str = Field(default="eur", description="Default currency for payments")
    checkout_success_url: str = Field(
        default="http://localhost:3000/booking/success?session_id={CHECKOUT_SESSION_ID}",
        description="Redirect after a completed checkout",
    )
    checkout_cancel_url: str = Field(
        default="http://localhost:3000/booking/cancelled",
        description="Redirect after an abandoned checkout",
    )

    # Reservation holds
    reservation_short_ttl_minutes: int = Field(
        default=30, ge=1, description="Hold lifetime when every allowed method settles immediately"
    )
    reservation_long_ttl_hours: int = Field(
        default=168, ge=1, description="Hold lifetime for voucher/delayed settlement methods"
    )
    immediate_payment_methods: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["card", "link", "apple_pay", "google_pay"]
    )
    delayed_payment_methods: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: [
            "multibanco",
            "boleto",
            "konbini",
            "oxxo",
            "customer_balance",
            "sepa_debit",
        ]
    )

    # Conflict detection
    default_minimum_notice_minutes: int = Field(
        default=1440, ge=0, description="Minimum notice used when a resource has no settings row"
    )

    # Gateway retry behaviour
    gateway_max_attempts: int = Field(default=3, ge=1)
    gateway_backoff_seconds: float = Field(default=0.5, ge=0)
    gateway_timeout_seconds: int = Field(default=8, ge=1)
    refund_timeout_seconds: int = Field(
        default=15, ge=1, description="Network timeout for refund calls, separate from DB timeouts"
    )

    # Delayed-payment reminders
    gentle_reminder_days_before_expiry: int = Field(default=4, ge=0)
    gentle_reminder_min_age_hours: int = Field(default=48, ge=0)
    urgent_reminder_days_before_expiry: int = Field(default=1, ge=0)
    urgent_reminder_min_age_hours: int = Field(default=120, ge=0)

    # Collaborators
    calendar_api_url: Optional[str] = Field(default=None, description="Calendar service base URL")
    calendar_api_token: Optional[SecretStr] = Field(default=None)
    calendar_timeout_seconds: float = Field(default=10.0, gt=0)
    notification_webhook_url: Optional[str] = Field(
        default=None, description="Endpoint that delivers booking notifications"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("immediate_payment_methods", "delayed_payment_methods", mode="before")
    @classmethod
    def _split_method_list(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        return value

    @field_validator("stripe_currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()

    def webhook_secret_value(self) -> Optional[str]:
        if self.stripe_webhook_secret is None:
            return None
        return self.stripe_webhook_secret.get_secret_value() or None


settings = Settings()
