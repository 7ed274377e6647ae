from typing import Dict, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./datahub.db"

    clio_api_base: str = "https://eu.app.clio.com/api/v4"
    clio_token_url: str = "https://eu.app.clio.com/oauth/token"
    clio_service_principal: str = "pbi"  # shared data-operations credentials
    secrets_file: str = ""  # empty: ~/.datahub/secrets.json

    token_expiry_buffer_seconds: int = 60
    request_timeout_seconds: float = 30.0
    provider_page_limit: int = 200
    report_poll_interval_seconds: float = 4.0
    report_timeout_seconds: float = 240.0
    shallow_timeout_seconds: float = 8.0
    deep_timeout_seconds: float = 90.0

    audit_months: int = 12
    backfill_pause_seconds: float = 2.0
    spot_check_users: Dict[int, str] = {}

    scheduler_enabled: bool = False
    scheduler_timezone: str = "Europe/London"
    daily_sync_minutes: str = "3,33"  # offset from legacy timer triggers at :00/:30
    rolling_sync_hour: int = 23
    rolling_sync_days: int = 7

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
