# slotbooking/config.py

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./slotbooking.db"
    redis_url: str = "redis://localhost:6379/0"

    default_timezone: str = "America/Santiago"

    # Shared secret of the upstream gateway; identity headers are trusted only with it
    internal_token: str = ""

    sendgrid_api_key: str = ""
    email_from: str = "no-reply@slotbooking.local"
    dashboard_url: str = "https://localhost/dashboard/schedule"

    background_jobs: bool = True
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        extra="ignore",
    )

    @property
    def resolved_database_url(self) -> str:
        url = self.database_url
        if url.startswith("sqlite:///./"):
            relative_path = url.replace("sqlite:///./", "")
            absolute_path = BASE_DIR / relative_path
            return f"sqlite:///{absolute_path}"
        return url


settings = Settings()
