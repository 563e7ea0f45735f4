import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        notification_cooldown_hours: int,
        near_limit_percent: float,
        renewal_window_days: int,
        reconcile_hour: int,
        retry_interval_minutes: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.notification_cooldown_hours = notification_cooldown_hours
        self.near_limit_percent = near_limit_percent
        self.renewal_window_days = renewal_window_days
        self.reconcile_hour = reconcile_hour
        self.retry_interval_minutes = retry_interval_minutes


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    notification_cooldown_hours = int(
        os.getenv("LEDGER_NOTIFICATION_COOLDOWN_HOURS", "24")
    )
    near_limit_percent = float(os.getenv("LEDGER_NEAR_LIMIT_PERCENT", "80"))
    renewal_window_days = int(os.getenv("LEDGER_RENEWAL_WINDOW_DAYS", "3"))
    reconcile_hour = int(os.getenv("LEDGER_RECONCILE_HOUR", "3"))
    retry_interval_minutes = int(os.getenv("LEDGER_RETRY_INTERVAL_MINUTES", "5"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        notification_cooldown_hours=notification_cooldown_hours,
        near_limit_percent=near_limit_percent,
        renewal_window_days=renewal_window_days,
        reconcile_hour=reconcile_hour,
        retry_interval_minutes=retry_interval_minutes,
    )
