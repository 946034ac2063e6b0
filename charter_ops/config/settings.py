"""
Environment driven settings for booking numbers, calendar export and Supabase access
"""

from functools import lru_cache
from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Supabase
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: str = ""
    BOOKINGS_TABLE: str = "bookings"
    SEQUENCES_TABLE: str = "booking_sequences"
    SEQUENCE_RPC: str = "next_booking_sequence"

    # Booking numbers
    BOOKING_NUMBER_FORMAT: str = "year_month_seq"
    BOOKING_NUMBER_PREFIX: str = "BK"
    BOOKING_SEQUENCE_LENGTH: int = 3

    # Calendar export
    ICS_UID_DOMAIN: str = "seascape-yachts.com"
    ICS_PRODID: str = "-//Seascape Yachts//Yacht Charter Dashboard//EN"
    ICS_CALENDAR_NAME: str = "Yacht Charter Bookings"
    ICS_FILENAME: str = "yacht-charter-bookings.ics"

    # Other
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process wide settings instance"""
    return Settings()


def get_supabase_config(settings: Settings = None) -> Dict[str, str]:
    """Get Supabase url and anon key, failing fast when either is missing"""
    settings = settings or get_settings()
    if not settings.SUPABASE_URL or not settings.SUPABASE_ANON_KEY:
        raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY environment variables are required")
    return {
        "url": settings.SUPABASE_URL,
        "anon_key": settings.SUPABASE_ANON_KEY,
    }
