import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "off", "no"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    SECRET_KEY: str
    DATABASE_URL: str | None
    APP_ENV: str
    LOG_LEVEL: str
    SQL_LOG_ENABLED: bool
    ADMIN_REGISTRATION_PASSWORD: str | None
    MYSTERIES_PER_PAGE: int
    CLUES_PER_PAGE: int
    SESSION_LIFETIME_DAYS: int
    SESSION_COOKIE_SECURE: bool
    MINIGAME_MAX_ATTEMPTS: int

    @property
    def show_error_details(self) -> bool:
        return self.APP_ENV == "development"


def get_settings() -> Settings:
    return Settings(
        SECRET_KEY=os.getenv("SECRET_KEY", "dev-insecure-key"),
        DATABASE_URL=os.getenv("DATABASE_URL"),
        APP_ENV=os.getenv("APP_ENV", "production").strip().lower(),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        SQL_LOG_ENABLED=_env_bool("SQL_LOG_ENABLED", True),
        ADMIN_REGISTRATION_PASSWORD=os.getenv("ADMIN_REGISTRATION_PASSWORD") or None,
        MYSTERIES_PER_PAGE=_env_int("MYSTERIES_PER_PAGE", 5),
        CLUES_PER_PAGE=_env_int("CLUES_PER_PAGE", 10),
        SESSION_LIFETIME_DAYS=_env_int("SESSION_LIFETIME_DAYS", 31),
        SESSION_COOKIE_SECURE=_env_bool("SESSION_COOKIE_SECURE", False),
        MINIGAME_MAX_ATTEMPTS=_env_int("MINIGAME_MAX_ATTEMPTS", 5),
    )
