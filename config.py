import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        sync_lock_timeout_secs: float,
        sync_timeout_secs: Optional[float],
        sync_preserve_actual: bool,
        sync_months_ahead: int,
        sweep_hour: int,
        sweep_minute: int,
        safety_sync_minutes: int,
        sync_max_age_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.sync_lock_timeout_secs = sync_lock_timeout_secs
        self.sync_timeout_secs = sync_timeout_secs
        self.sync_preserve_actual = sync_preserve_actual
        self.sync_months_ahead = sync_months_ahead
        self.sweep_hour = sweep_hour
        self.sweep_minute = sweep_minute
        self.safety_sync_minutes = safety_sync_minutes
        self.sync_max_age_secs = sync_max_age_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "Europe/Berlin")
    sync_lock_timeout_secs = float(os.getenv("BUDGET_SYNC_LOCK_TIMEOUT_SECS", "10"))
    raw_timeout = os.getenv("BUDGET_SYNC_TIMEOUT_SECS")
    sync_timeout_secs = float(raw_timeout) if raw_timeout else None
    return Settings(
        database_url=database_url,
        timezone=timezone,
        sync_lock_timeout_secs=sync_lock_timeout_secs,
        sync_timeout_secs=sync_timeout_secs,
        sync_preserve_actual=_env_flag("BUDGET_SYNC_PRESERVE_ACTUAL"),
        sync_months_ahead=int(os.getenv("BUDGET_SYNC_MONTHS_AHEAD", "1")),
        sweep_hour=int(os.getenv("BUDGET_SWEEP_HOUR", "0")),
        sweep_minute=int(os.getenv("BUDGET_SWEEP_MINUTE", "5")),
        safety_sync_minutes=int(os.getenv("BUDGET_SAFETY_SYNC_MINUTES", "60")),
        sync_max_age_secs=float(os.getenv("BUDGET_SYNC_MAX_AGE_SECS", "300")),
    )
