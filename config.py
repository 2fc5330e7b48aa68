"""
Configuration module for the telehealth appointment engine.
Loads environment variables and provides typed configuration.
"""

from decimal import Decimal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file
env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    storage_backend: str = "supabase"  # supabase, memory
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    # Stripe (wallet top-ups)
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = (
        None  # Required in production for webhook verification
    )
    topup_currency: str = "inr"

    # Telegram notifications
    bot_token: Optional[str] = None

    # Twilio Video
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_room_type: str = "group"

    # OTP
    otp_length: int = 6
    otp_max_attempts: int = 3
    otp_ttl_hours_online: Optional[int] = 24
    otp_ttl_hours_clinic: Optional[int] = 24
    otp_ttl_hours_home_visit: Optional[int] = None  # None = never expires

    # Emergency
    emergency_flat_fee: Decimal = Decimal("2500")
    emergency_pending_ttl_minutes: int = 30
    emergency_join_ttl_minutes: int = 120  # accepted calls the doctor never joined

    # Doctor presence
    doctor_active_minutes: int = 60

    # Expiry sweep
    sweep_interval_minutes: int = 5
    scheduler_enabled: bool = False  # run the sweep in-process from webhook.py
    cron_secret: Optional[str] = None

    # Wallet ledger
    wallet_max_retries: int = 5

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    environment: str = "development"  # development, staging, production

    # Redis Configuration (for APScheduler cluster support)
    redis_url: Optional[str] = (
        None  # Redis connection URL (e.g., redis://localhost:6379/0)
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="none",
    )

    def otp_ttl_hours(self, modality: str) -> Optional[int]:
        """
        OTP lifetime in hours for a modality.

        Args:
            modality: Modality tag (online, clinic, home_visit)

        Returns:
            Lifetime in hours, or None when the OTP never expires
        """
        return {
            "online": self.otp_ttl_hours_online,
            "clinic": self.otp_ttl_hours_clinic,
            "home_visit": self.otp_ttl_hours_home_visit,
        }.get(modality)

    def validate_all_required(self) -> None:
        """
        Validate that all required settings are present.

        Raises:
            ValueError: If required fields are missing or invalid
        """
        required_fields = []
        if self.storage_backend == "supabase":
            required_fields += ["supabase_url", "supabase_key"]
        elif self.storage_backend != "memory":
            raise ValueError(
                f"Unknown storage backend: {self.storage_backend}. "
                f"Use 'supabase' or 'memory'."
            )

        if self.environment == "production":
            required_fields += ["stripe_secret_key", "stripe_webhook_secret"]

        missing = []
        for field in required_fields:
            value = getattr(self, field, None)

            # Check if value is missing or placeholder
            if not value:
                missing.append(field)
                continue

            value_str = str(value).lower()
            if value_str.startswith("your_"):
                missing.append(field)

        if missing:
            raise ValueError(
                f"Missing or invalid required configuration: "
                f"{', '.join(missing)}. "
                f"Please check your .env file and ensure all required "
                f"values are set."
            )


# Global settings instance
settings = Settings()
