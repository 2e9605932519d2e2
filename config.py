import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        telegram_bot_token: str,
        telegram_api_base: str,
        telegram_timeout_secs: float,
        scheduler_interval_hours: float,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.telegram_bot_token = telegram_bot_token
        self.telegram_api_base = telegram_api_base
        self.telegram_timeout_secs = telegram_timeout_secs
        self.scheduler_interval_hours = scheduler_interval_hours
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCEHUB_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCEHUB_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "financehub.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("FINANCEHUB_TIMEZONE", "Europe/Moscow")
    telegram_bot_token = os.getenv("FINANCEHUB_TELEGRAM_BOT_TOKEN", "")
    telegram_api_base = os.getenv(
        "FINANCEHUB_TELEGRAM_API_BASE", "https://api.telegram.org"
    )
    telegram_timeout_secs = float(os.getenv("FINANCEHUB_TELEGRAM_TIMEOUT_SECS", "5"))
    scheduler_interval_hours = float(
        os.getenv("FINANCEHUB_SCHEDULER_INTERVAL_HOURS", "1")
    )
    scheduler_enabled = _env_flag("FINANCEHUB_SCHEDULER_ENABLED", True)
    return Settings(
        database_url=database_url,
        timezone=timezone,
        telegram_bot_token=telegram_bot_token,
        telegram_api_base=telegram_api_base,
        telegram_timeout_secs=telegram_timeout_secs,
        scheduler_interval_hours=scheduler_interval_hours,
        scheduler_enabled=scheduler_enabled,
    )
