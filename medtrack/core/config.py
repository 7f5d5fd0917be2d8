from typing import ClassVar, List

from fastapi.security import OAuth2PasswordBearer
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "MedTrack API"
    app_version: str = "1.0.0"

    # Production: postgresql+asyncpg://... ; local and tests run on aiosqlite
    database_url: str = "sqlite+aiosqlite:///./medtrack.db"
    database_echo: bool = False

    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    oauth2_scheme: ClassVar[OAuth2PasswordBearer] = OAuth2PasswordBearer(tokenUrl="token")

    # Slot times are local wall-clock values in this zone
    timezone: str = "America/Toronto"

    reminders_enabled: bool = True
    reminder_poll_seconds: int = 60
    reminder_refetch_seconds: int = 300

    default_days_before_empty: int = 7
    supply_medium_multiplier: int = 2
    decrement_supply_on_take: bool = True

    streak_lookback_days: int = 365
    transition_retries: int = 3

    log_level: str = "INFO"
    log_format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    cors_origins: List[str] = ["*"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


settings = Settings()
