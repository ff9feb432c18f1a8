"""
Configuration module for the Lux scheduling service.
Loads environment variables and provides typed configuration.
"""

from pathlib import Path
from typing import Set

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.constants import (
    DEFAULT_CANCELLATION_LEAD_MINUTES,
    DEFAULT_RESERVATION_TTL_SECONDS,
)

# Load .env file
env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""

    # Scheduling policy
    timezone: str = "America/Sao_Paulo"  # Used for resources without their own zone
    reservation_ttl_seconds: int = DEFAULT_RESERVATION_TTL_SECONDS
    cancellation_lead_minutes: int = DEFAULT_CANCELLATION_LEAD_MINUTES

    # Background jobs
    sweep_interval_seconds: int = 15
    reconciliation_interval_minutes: int = 10
    stream_poll_interval_seconds: float = 5.0

    # Admin Settings
    admin_user_ids: str = ""  # Comma-separated user IDs allowed to cancel any booking

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    environment: str = "development"  # development, staging, production

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def admin_ids(self) -> Set[str]:
        return {
            user_id.strip()
            for user_id in self.admin_user_ids.split(",")
            if user_id.strip()
        }

    def is_admin(self, user_id: str) -> bool:
        """
        Check if a user ID is an administrator.

        Args:
            user_id: User ID to check

        Returns:
            True if user is admin, False otherwise
        """
        return user_id in self.admin_ids

    def validate_all_required(self) -> None:
        """
        Validate that all required settings are present.

        Raises:
            ValueError: If required fields are missing or invalid
        """
        required_fields = ["supabase_url", "supabase_key"]

        missing = []
        for field in required_fields:
            value = getattr(self, field, None)

            if not value:
                missing.append(field)
                continue

            # Check for placeholder values
            if str(value).lower().startswith("your_"):
                missing.append(field)

        if self.reservation_ttl_seconds <= 0:
            missing.append("reservation_ttl_seconds")
        if self.cancellation_lead_minutes < 0:
            missing.append("cancellation_lead_minutes")

        if missing:
            raise ValueError(
                f"Missing or invalid required configuration: "
                f"{', '.join(missing)}. "
                f"Please check your .env file and ensure all required "
                f"values are set."
            )


# Global settings instance
settings = Settings()
