# api/app/config.py
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized application configuration.

    Loads environment variables from `.env` and provides
    typed access across API, worker, and services.
    """

    # ─────────────────────────────────────────────
    # Pydantic Settings Config
    # ─────────────────────────────────────────────
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ─────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────
    database_url: str
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # ─────────────────────────────────────────────
    # OpenAI
    # ─────────────────────────────────────────────
    openai_api_key: str
    openai_model: str = "gpt-4o"
    openai_reduced_model: str = "gpt-4o-mini"

    # ─────────────────────────────────────────────
    # AI Budget
    # ─────────────────────────────────────────────
    ai_provider: str = "openai"
    ai_monthly_budget_cents: int = 50_000
    ai_tagging_batch_size: int = 20
    ai_tagging_reduced_batch_size: int = 10
    ai_queue_defer_seconds: int = 3600

    # ─────────────────────────────────────────────
    # Jobs
    # ─────────────────────────────────────────────
    job_default_max_attempts: int = 5
    job_backoff_base_seconds: float = 30.0
    job_backoff_max_seconds: float = 3600.0
    job_lock_timeout_seconds: int = 600

    # ─────────────────────────────────────────────
    # Worker
    # ─────────────────────────────────────────────
    worker_poll_interval: float = 1.0
    worker_concurrency: int = 4
    worker_error_backoff: float = 5.0
    worker_reclaim_interval: float = 60.0
    worker_metrics_interval: float = 30.0

    # ─────────────────────────────────────────────
    # Screenshots
    # ─────────────────────────────────────────────
    chromium_path: str = "chromium"
    screenshot_timeout_seconds: float = 30.0
    screenshot_storage_path: str = "/data/screenshots"

    # ─────────────────────────────────────────────
    # Feeds / Email
    # ─────────────────────────────────────────────
    feed_fetch_timeout_seconds: float = 20.0
    feed_user_agent: str = "HomepageFeedBot/1.0"

    aws_ses_region: str = "us-east-1"
    email_from_address: str = "relay@homepage.local"

    # ─────────────────────────────────────────────
    # Admin API
    # ─────────────────────────────────────────────
    admin_api_token: str | None = None

    # ─────────────────────────────────────────────
    # Derived Properties
    # ─────────────────────────────────────────────
    @property
    def screenshot_dir(self) -> Path:
        p = Path(self.screenshot_storage_path)
        p.mkdir(parents=True, exist_ok=True)
        return p


# ─────────────────────────────────────────────
# Cached Settings Instance
# ─────────────────────────────────────────────
@lru_cache
def get_settings() -> Settings:
    """
    Returns a cached Settings instance so config
    is only loaded once per process.
    """
    return Settings()
