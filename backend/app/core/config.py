"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path
from typing import Set

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    app_name: str = "Haul Dispatch API"
    log_level: str = "INFO"
    dispatch_db_path: str = "./data/dispatch.db"

    # Capacity rules
    deliveries_per_truck: int = 5
    same_day_cutoff_hour: int = 12
    # Comma separated weekday numbers (Monday=0). Sunday yard closure by default.
    closed_weekdays: str = "6"
    local_timezone: str = "America/Chicago"
    capacity_max_range_days: int = 62

    # Travel time
    default_eta_minutes: int = 30
    load_dump_minutes: int = 10
    yard_address: str = "18565 Main St, Conroe, TX 77385"
    google_maps_api_key: str = ""
    google_maps_base_url: str = "https://maps.googleapis.com/maps/api/distancematrix/json"

    # Brevo (SMS + email)
    brevo_api_key: str = ""
    brevo_base_url: str = "https://api.brevo.com/v3"
    brevo_sender_email: str = "dispatch@example.com"
    brevo_sender_name: str = "Haul Dispatch"
    brevo_sms_sender: str = "HaulDisp"
    owner_alert_phone: str = ""

    http_timeout_seconds: float = 12.0

    def closed_weekday_set(self) -> Set[int]:
        days: Set[int] = set()
        for token in (self.closed_weekdays or "").split(","):
            token = token.strip()
            if token.isdigit() and 0 <= int(token) <= 6:
                days.add(int(token))
        return days

    def same_day_cutoff_label(self) -> str:
        hour = self.same_day_cutoff_hour % 24
        suffix = "AM" if hour < 12 else "PM"
        display = hour % 12 or 12
        return f"{display}:00 {suffix}"

    def notifications_enabled(self) -> bool:
        key = (self.brevo_api_key or "").strip()
        return bool(key) and key != "your-brevo-key"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
