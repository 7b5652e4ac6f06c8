"""Runtime settings loaded from the environment or a .env file."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Primary store
    STORE_BUCKET: str = ""
    STORE_TOKEN: str | None = None

    # Verification
    POLL_INTERVAL: float = 30.0
    MAX_WAIT: float = 1800.0
    ROLL_CAPACITY: int = 30

    # Replication
    MAX_ATTEMPTS: int = 3
    BACKOFF_INITIAL: float = 1.0
    BACKOFF_MAX: float = 30.0
    RATE_LIMIT_DELAY: float = 5.0
    INTER_ITEM_DELAY: float = 0.5
    MAX_CONCURRENT_PIPELINES: int = 4

    # Dropbox
    DROPBOX_TOKEN: str | None = None
    DROPBOX_REFRESH_TOKEN: str | None = None
    DROPBOX_APP_KEY: str | None = None
    DROPBOX_APP_SECRET: str | None = None
    DROPBOX_ROOT: str = "/import"

    # Google Drive
    DRIVE_REFRESH_TOKEN: str | None = None
    DRIVE_CLIENT_ID: str | None = None
    DRIVE_CLIENT_SECRET: str | None = None
    DRIVE_PARENT_FOLDER_ID: str | None = None

    # Token lifecycle
    TOKEN_REFRESH_INTERVAL: float = 3.5 * 60 * 60
    TOKEN_MAX_FAILURES: int = 3
    TOKEN_REFRESH_TIMEOUT: float = 30.0

    # Alerts and mail
    ALERT_LOG_PATH: Path | None = None
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    MAIL_FROM: str | None = None
    ADMIN_EMAIL: str | None = None
    FOUNDER_EMAIL: str | None = None
    DOWNLOAD_BASE_URL: str | None = None

    @property
    def dropbox_configured(self) -> bool:
        return bool(self.DROPBOX_REFRESH_TOKEN and self.DROPBOX_APP_KEY and self.DROPBOX_APP_SECRET)

    @property
    def drive_configured(self) -> bool:
        return bool(
            self.DRIVE_REFRESH_TOKEN
            and self.DRIVE_CLIENT_ID
            and self.DRIVE_CLIENT_SECRET
            and self.DRIVE_PARENT_FOLDER_ID
        )

    @property
    def smtp_configured(self) -> bool:
        return bool(self.SMTP_USERNAME and self.SMTP_PASSWORD)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
