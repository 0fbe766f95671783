from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


class Settings(BaseSettings):
    """Service settings read from the environment, one field per variable."""

    database_url: str = Field(..., description="SQLAlchemy database URL")
    jwt_secret: str = Field(..., description="HS256 secret for bearer tokens")
    jwt_algorithm: str = Field(default="HS256")

    # Payments
    payment_provider: str = Field(default="paystack", description="Default provider for checkout")
    payment_currency: str = Field(default="NGN", description="Currency when checkout names none")
    supported_currencies: str = Field(
        default="NGN,GHS,ZAR,KES,USD,EUR,GBP",
        description="Accepted checkout currencies (comma-separated)",
    )

    # Paystack
    paystack_secret_key: Optional[str] = None
    paystack_webhook_secret: Optional[str] = Field(
        default=None, description="Defaults to the secret key, which Paystack signs with"
    )
    paystack_base_url: str = "https://api.paystack.co"
    paystack_callback_url: Optional[str] = None

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance: int = Field(default=300, ge=0)

    provider_timeout: float = Field(default=10.0, gt=0, description="Provider HTTP timeout (seconds)")
    webhook_claim_timeout: int = Field(
        default=300, gt=0, description="Seconds before a PROCESSING webhook may be claimed again"
    )

    log_level: str = "INFO"
    json_logs: bool = True
    create_tables: bool = True

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    @field_validator("payment_provider")
    @classmethod
    def lower_provider(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("payment_currency", "log_level")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.strip().upper()

    def currency_codes(self) -> Tuple[str, ...]:
        """Parse supported currencies from the comma-separated string."""
        return tuple(c.strip().upper() for c in self.supported_currencies.split(",") if c.strip())

    @classmethod
    def from_env(cls) -> "Settings":
        try:
            return cls()
        except ValidationError as exc:
            raise RuntimeError(f"Invalid configuration. Check your .env file.\n{exc}") from exc
