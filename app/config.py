"""
Configuration management for the POS sales ledger
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "POS Sales Ledger"
    app_version: str = "0.4.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_to_file: bool = True
    log_dir: str = "logs"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./pos_ledger.db"

    # Tenants without an explicit timezone fall back to this one
    default_timezone: str = "America/Chicago"

    # Reconciliation run limits
    sync_timeout_seconds: int = 120  # Wall-clock budget for one sync run
    classification_batch_limit: int = 10000  # Max rows per batch classification call
    ledger_write_batch_size: int = 500  # Rows per multi-row upsert statement

    # Backfill settings
    initial_sync_days: int = 90  # First sync of a connection covers this many days
    backfill_chunk_days: int = 7  # Days per sync_range chunk
    incremental_window_hours: int = 25  # Look-back window for incremental pulls
    incremental_buffer_hours: int = 1

    # Provider clients
    provider_min_request_interval: float = 0.25  # Seconds between page requests
    provider_max_retries: int = 3
    provider_page_size: int = 100
    toast_api_base_url: str = "https://ws-api.toasttab.com"
    square_api_base_url: str = "https://connect.squareup.com"

    # Sync Schedules
    enable_scheduler: bool = True
    incremental_sync_minutes: int = 15
    bulk_sync_schedule: str = "0 */6 * * *"
    classification_job_minutes: int = 30

    # Background callers (scheduler, internal jobs) authenticate with this token
    service_token: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
