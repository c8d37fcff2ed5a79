"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("booking_calendar.config")


class Settings(BaseSettings):
    # Google OAuth client (used for refresh-token exchange)
    google_client_id: str = ""
    google_client_secret: str = ""

    # Sync scheduler
    sync_enabled: bool = True
    sync_interval_minutes: int = 15
    calendar_list_sync_hours: int = 12  # twice daily
    provider_timeout_seconds: float = 30.0
    synced_event_retention_days: int = 30
    token_refresh_leeway_seconds: int = 60

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []

        if self.sync_interval_minutes <= 0:
            raise ValueError("SYNC_INTERVAL_MINUTES must be a positive number of minutes.")
        if self.calendar_list_sync_hours <= 0:
            raise ValueError("CALENDAR_LIST_SYNC_HOURS must be a positive number of hours.")
        if self.provider_timeout_seconds <= 0:
            raise ValueError("PROVIDER_TIMEOUT_SECONDS must be positive.")

        if not self.google_client_id or not self.google_client_secret:
            warnings.append(
                "GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET not set. Expired Google "
                "tokens cannot be refreshed; affected connections will be skipped."
            )

        if self.synced_event_retention_days <= 0:
            warnings.append(
                "SYNCED_EVENT_RETENTION_DAYS is not positive; tracking records "
                "will be purged on every sync."
            )

        return warnings


settings = Settings()
