"""Application settings loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Coaching prompt engine configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default: the tool surface has no auth layer of its own.
    nudge_host: str = "127.0.0.1"
    nudge_port: int = 8001
    nudge_log_level: str = "info"
    nudge_allow_insecure_bind: bool = False

    # Storage
    db_path: str = "~/.nudge/coaching.db"
    db_timeout_seconds: float = 5.0

    # Encryption (reading payloads and delivery context snapshots)
    encryption_key: str = ""

    # Aggregation
    default_timezone: str = "UTC"
    backfill_threshold_minutes: int = 60
    high_glucose_threshold: float = 110.0
    elevated_systolic_threshold: float = 140.0
    elevated_diastolic_threshold: float = 90.0

    # Rule engine
    fire_policy: Literal["all", "highest_priority"] = "all"
    batch_max_workers: int = 1
    batch_user_timeout_seconds: float = 30.0

    # Prompt/rule catalog seeded at startup ("" = packaged default catalog)
    catalog_path: str = ""
    seed_catalog: bool = True


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
