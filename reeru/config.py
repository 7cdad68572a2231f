from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
import os


class Settings(BaseSettings):
    # App Settings
    app_name: str = "Reeru"
    app_version: str = "1.0.0"
    debug: bool = False

    # API Settings
    backend_host: str = "0.0.0.0"
    backend_port: int = int(os.getenv("PORT", "8000"))
    api_base_url: str = "http://localhost:8000"
    allowed_origins: str = "http://localhost:3000"

    # Database - hosted environments provide DATABASE_URL, fallback to SQLite for local
    database_url: Optional[str] = None
    redis_url: str = ""

    # Auth
    jwt_secret: str = ""
    internal_secret: str = ""

    # Background dispatch: auto | qstash | direct | inline
    dispatch_backend: str = "auto"
    qstash_url: str = "https://qstash.upstash.io"
    qstash_token: str = ""
    qstash_current_signing_key: str = ""
    qstash_next_signing_key: str = ""
    qstash_retries: int = 3
    qstash_delay: str = "1s"

    # Klap
    klap_api_key: str = ""
    klap_base_url: str = "https://api.klap.app/v2"
    klap_language: str = "en"
    klap_target_clip_count: int = 3
    klap_max_clip_count: int = 3
    klap_min_duration: int = 15
    klap_max_duration: int = 60
    klap_target_duration: int = 50
    http_timeout_seconds: float = 30.0

    # Polling budgets
    task_poll_interval_seconds: float = 15.0
    task_poll_max_attempts: int = 120
    project_fetch_interval_seconds: float = 20.0
    project_fetch_max_attempts: int = 5
    export_poll_interval_seconds: float = 10.0
    export_poll_max_attempts: int = 30

    # Notifications
    telegram_bot_token: str = ""

    # Worker housekeeping
    pending_job_grace_seconds: int = 120
    job_retention_hours: int = 72

    # Rate limiting
    rate_limit_enabled: bool = True
    submit_rate_limit: str = "10/minute"

    class Config:
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # DATABASE_URL from the host uses postgres:// or postgresql://,
        # but SQLAlchemy async needs postgresql+asyncpg://
        url = self.database_url
        if not url:
            self.database_url = "sqlite+aiosqlite:///./database/reeru.db"
        elif url.startswith("postgres://"):
            self.database_url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgresql://"):
            self.database_url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    @property
    def worker_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}/api/klap/worker"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
