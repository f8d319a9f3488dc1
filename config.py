import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        backfill_missed: bool,
        default_budget_name: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.backfill_missed = backfill_missed
        self.default_budget_name = default_budget_name


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_TRACKER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_TRACKER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TRACKER_TIMEZONE", "Europe/Berlin")
    log_level = os.getenv("BUDGET_TRACKER_LOG_LEVEL", "INFO").upper()
    backfill_missed = _env_flag("BUDGET_TRACKER_BACKFILL_MISSED")
    default_budget_name = os.getenv("BUDGET_TRACKER_DEFAULT_BUDGET_NAME", "My Budget")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        log_level=log_level,
        backfill_missed=backfill_missed,
        default_budget_name=default_budget_name,
    )
