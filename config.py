import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        user1_name: str,
        user2_name: str,
        feed_base_url: str,
        feed_client_id: str,
        feed_secret: str,
        feed_timeout_secs: float,
        sync_max_records: int,
        sync_interval_hours: int,
        budget_warning_threshold: int,
        log_level: str,
        sync_max_pages: int = 1000,
        feed_env: str = "sandbox",
        feed_client_name: str = "Household Budget",
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.user1_name = user1_name
        self.user2_name = user2_name
        self.feed_base_url = feed_base_url
        self.feed_client_id = feed_client_id
        self.feed_secret = feed_secret
        self.feed_timeout_secs = feed_timeout_secs
        self.sync_max_records = sync_max_records
        self.sync_interval_hours = sync_interval_hours
        self.budget_warning_threshold = budget_warning_threshold
        self.log_level = log_level
        self.sync_max_pages = sync_max_pages
        self.feed_env = feed_env
        self.feed_client_name = feed_client_name

    @property
    def user_names(self) -> tuple[str, str]:
        return (self.user1_name, self.user2_name)


FEED_ENVIRONMENTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("HOUSEHOLD_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "household.db"
    database_url = os.getenv("HOUSEHOLD_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("HOUSEHOLD_TIMEZONE", "America/New_York")
    feed_env = os.getenv("HOUSEHOLD_FEED_ENV", "sandbox").lower()
    feed_base_url = os.getenv(
        "HOUSEHOLD_FEED_BASE_URL",
        FEED_ENVIRONMENTS.get(feed_env, FEED_ENVIRONMENTS["sandbox"]),
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        user1_name=os.getenv("HOUSEHOLD_USER1_NAME", "User 1"),
        user2_name=os.getenv("HOUSEHOLD_USER2_NAME", "User 2"),
        feed_base_url=feed_base_url.rstrip("/"),
        feed_client_id=os.getenv("HOUSEHOLD_FEED_CLIENT_ID", ""),
        feed_secret=os.getenv("HOUSEHOLD_FEED_SECRET", ""),
        feed_timeout_secs=float(os.getenv("HOUSEHOLD_FEED_TIMEOUT_SECS", "10")),
        sync_max_records=int(os.getenv("HOUSEHOLD_SYNC_MAX_RECORDS", "10000")),
        sync_interval_hours=int(os.getenv("HOUSEHOLD_SYNC_INTERVAL_HOURS", "6")),
        budget_warning_threshold=int(
            os.getenv("HOUSEHOLD_BUDGET_WARNING_THRESHOLD", "75")
        ),
        log_level=os.getenv("HOUSEHOLD_LOG_LEVEL", "INFO").upper(),
        sync_max_pages=int(os.getenv("HOUSEHOLD_SYNC_MAX_PAGES", "1000")),
        feed_env=feed_env,
        feed_client_name=os.getenv("HOUSEHOLD_FEED_CLIENT_NAME", "Household Budget"),
    )
