import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_user_id: int,
        resync_forward: bool,
        auto_instantiate_budgets: bool,
        reconcile_enabled: bool,
        reconcile_hour: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_user_id = default_user_id
        self.resync_forward = resync_forward
        self.auto_instantiate_budgets = auto_instantiate_budgets
        self.reconcile_enabled = reconcile_enabled
        self.reconcile_hour = reconcile_hour
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Asia/Seoul")
    default_user_id = int(os.getenv("LEDGER_DEFAULT_USER_ID", "1"))
    resync_forward = _env_flag("LEDGER_RESYNC_FORWARD", True)
    auto_instantiate_budgets = _env_flag("LEDGER_AUTO_INSTANTIATE_BUDGETS", True)
    reconcile_enabled = _env_flag("LEDGER_RECONCILE_ENABLED", False)
    reconcile_hour = int(os.getenv("LEDGER_RECONCILE_HOUR", "3"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_user_id=default_user_id,
        resync_forward=resync_forward,
        auto_instantiate_budgets=auto_instantiate_budgets,
        reconcile_enabled=reconcile_enabled,
        reconcile_hour=reconcile_hour,
        log_level=log_level,
    )
