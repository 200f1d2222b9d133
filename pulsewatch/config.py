"""Pulsewatch — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True

    # ── Pulse lifecycle ──
    pulse_timeout_seconds: int = 900
    reaper_interval_seconds: int = 60
    schedule_interval_seconds: int = 60
    slug_length: int = 21
    slug_max_attempts: int = 5

    # ── Worker dispatch ──
    worker_invoke_url: str = ""
    worker_auth_token: Optional[str] = None
    worker_timeout_seconds: float = 10.0
    is_beta: bool = False
    feature_flags: List[str] = []
    membership_policy: str = "primary"  # primary | first

    # ── Baseline ──
    baseline_window_size: int = 5
    regression_threshold_pct: float = 10.0
    finalize_max_attempts: int = 5

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/pulsewatch.db"
        return "sqlite:///./pulsewatch.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
