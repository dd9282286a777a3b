from __future__ import annotations
from functools import lru_cache
from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── App ──────────────────────────────────────────────────────────────────
    APP_NAME: str = "Questionnaire Form Sync"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # ── Authentication ───────────────────────────────────────────────────────
    API_KEY: str  # required, no default
    USER_ID_HEADER: str = "X-User-Id"

    # ── CORS ─────────────────────────────────────────────────────────────────
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # ── Database ─────────────────────────────────────────────────────────────
    DB_USER: str  # required, no default
    DB_PASSWORD: str  # required, no default
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "formsync"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # ── Redis (OAuth state nonces) ───────────────────────────────────────────
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_POOL_SIZE: int = 10
    REDIS_SOCKET_TIMEOUT: float = 2.0
    REDIS_CONNECT_TIMEOUT: float = 2.0

    @property
    def REDIS_URL(self) -> str:
        from urllib.parse import quote_plus
        if self.REDIS_PASSWORD:
            return f"redis://:{quote_plus(self.REDIS_PASSWORD)}@{self.REDIS_HOST}:{self.REDIS_PORT}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    # ── Google OAuth ─────────────────────────────────────────────────────────
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = "http://localhost:8000/oauth/google/callback"
    GOOGLE_AUTH_URI: str = "https://accounts.google.com/o/oauth2/auth"
    GOOGLE_TOKEN_URI: str = "https://oauth2.googleapis.com/token"
    GOOGLE_SCOPES: List[str] = [
        "https://www.googleapis.com/auth/forms.body",
        "https://www.googleapis.com/auth/forms.responses.readonly",
        "https://www.googleapis.com/auth/spreadsheets",
        "https://www.googleapis.com/auth/drive.file",
    ]
    OAUTH_SILENT_REFRESH: bool = True    # try the refresh token before redirecting
    OAUTH_STATE_TTL_SECONDS: int = 600

    # ── Provider HTTP ────────────────────────────────────────────────────────
    FORMS_API_BASE: str = "https://forms.googleapis.com/v1"
    SHEETS_API_BASE: str = "https://sheets.googleapis.com/v4"
    DRIVE_API_BASE: str = "https://www.googleapis.com/drive/v3"
    HTTP_TIMEOUT: float = 15.0
    MAX_RETRIES: int = 3

    # ── Sync ─────────────────────────────────────────────────────────────────
    SYNC_STATUS_RECENT_RUNS: int = 5
    SYNC_ERROR_SUMMARY_ITEMS: int = 5

    @property
    def DATABASE_URL(self) -> str:
        from urllib.parse import quote_plus
        return (
            f"postgresql+asyncpg://{quote_plus(self.DB_USER)}:{quote_plus(self.DB_PASSWORD)}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}")
        return v

    model_config = {"env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
