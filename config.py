import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        token_max_age_secs: int,
        report_loading_timeout_secs: float,
        sync_base_url: Optional[str],
        sync_timeout_secs: float,
        sync_log_retention_days: int,
        report_cache_max_sessions: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_secs = token_max_age_secs
        self.report_loading_timeout_secs = report_loading_timeout_secs
        self.sync_base_url = sync_base_url
        self.sync_timeout_secs = sync_timeout_secs
        self.sync_log_retention_days = sync_log_retention_days
        self.report_cache_max_sessions = report_cache_max_sessions


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BILLS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "bills.db"
    database_url = os.getenv("BILLS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BILLS_TIMEZONE", "Europe/Berlin")
    token_secret = os.getenv(
        "BILLS_TOKEN_SECRET",
        "4f1c0d2b9e7a8c6d5b3a2f1e0d9c8b7a6f5e4d3c2b1a09f8e7d6c5b4a3f2e1d0",
    )
    token_max_age_secs = int(os.getenv("BILLS_TOKEN_MAX_AGE_SECS", "2592000"))
    report_loading_timeout_secs = float(
        os.getenv("BILLS_REPORT_LOADING_TIMEOUT_SECS", "10")
    )
    sync_base_url = os.getenv("BILLS_SYNC_BASE_URL") or None
    sync_timeout_secs = float(os.getenv("BILLS_SYNC_TIMEOUT_SECS", "15"))
    sync_log_retention_days = int(os.getenv("BILLS_SYNC_LOG_RETENTION_DAYS", "30"))
    report_cache_max_sessions = int(
        os.getenv("BILLS_REPORT_CACHE_MAX_SESSIONS", "64")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_secs=token_max_age_secs,
        report_loading_timeout_secs=report_loading_timeout_secs,
        sync_base_url=sync_base_url,
        sync_timeout_secs=sync_timeout_secs,
        sync_log_retention_days=sync_log_retention_days,
        report_cache_max_sessions=report_cache_max_sessions,
    )
