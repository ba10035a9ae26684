import os
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


DATABASE_FILENAME = "recurring_ledger.sqlite3"


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        horizon_months: int,
        projection_days: int,
        alert_window_days: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.horizon_months = horizon_months
        self.projection_days = projection_days
        self.alert_window_days = alert_window_days

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _int_env(name: str, default: int, minimum: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    return max(minimum, value)


def _timezone_env() -> str:
    name = os.getenv("LEDGER_TIMEZONE", "UTC").strip() or "UTC"
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"LEDGER_TIMEZONE is not a known time zone: {name!r}") from exc
    return name


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / DATABASE_FILENAME}"
    return Settings(
        database_url=database_url,
        timezone=_timezone_env(),
        # Occurrences are written this many months past today.
        horizon_months=_int_env("LEDGER_HORIZON_MONTHS", 12, minimum=1),
        projection_days=_int_env("LEDGER_PROJECTION_DAYS", 30, minimum=1),
        alert_window_days=_int_env("LEDGER_ALERT_WINDOW_DAYS", 7, minimum=0),
    )
