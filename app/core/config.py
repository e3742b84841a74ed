from __future__ import annotations

from pydantic import AliasChoices, Field

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str | None = None
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    ATTEMPT_STORE_BACKEND: str = "database"
    ATTEMPT_KEY_SALT: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ATTEMPT_KEY_SALT", "IP_HASH_SALT"),
    )

    LOGIN_WINDOW_SEC: int = 600
    LOGIN_ACCOUNT_MAX_FAILURES: int = 5
    LOGIN_IP_MAX_FAILURES: int = 10
    LOGIN_LOCKOUT_BASE_SEC: int = 900
    # Per-scope overrides; unset falls back to the shared values above.
    LOGIN_IP_WINDOW_SEC: int | None = None
    LOGIN_ACCOUNT_WINDOW_SEC: int | None = None
    LOGIN_IP_LOCKOUT_BASE_SEC: int | None = None
    LOGIN_ACCOUNT_LOCKOUT_BASE_SEC: int | None = None
    LOGIN_LOCKOUT_FACTOR: float = 2.0
    LOGIN_LOCKOUT_MAX_SEC: int = 86400
    LOGIN_BASE_DELAY_MS: int = 250
    LOGIN_MAX_DELAY_MS: int = 5000

    TRUST_PROXY_HEADERS: bool = False

    IDENTITY_PROVIDER: str = "gotrue"
    GOTRUE_URL: str | None = Field(
        default=None,
        validation_alias=AliasChoices("GOTRUE_URL", "SUPABASE_URL"),
    )
    GOTRUE_API_KEY: str | None = Field(
        default=None,
        validation_alias=AliasChoices("GOTRUE_API_KEY", "SUPABASE_ANON_KEY"),
    )
    REQUEST_TIMEOUT_SEC: float = 10.0

    JWT_SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    CORS_ORIGINS: str = ""


settings = Settings()
