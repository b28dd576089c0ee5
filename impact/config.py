"""Environment configuration."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    """Field operations service settings, read from FIELD_OPS_* variables."""

    SECRET_KEY: str = "insecure-development-key"
    DEBUG: bool = False
    ALLOWED_HOSTS: str = "localhost,127.0.0.1,testserver"

    # Database
    DB_ENGINE: str = "django.db.backends.sqlite3"
    DB_NAME: str = "field_ops.sqlite3"
    DB_USER: str = ""
    DB_PASSWORD: str = ""
    DB_HOST: str = ""
    DB_PORT: str = ""

    TIME_ZONE: str = "UTC"
    LOG_LEVEL: str = "INFO"

    # API
    PAGE_SIZE: int = 50

    # Interview management service (optional)
    INTERVIEW_SERVICE_URL: Optional[str] = None
    INTERVIEW_SERVICE_TIMEOUT: float = 5.0

    model_config = SettingsConfigDict(env_prefix="FIELD_OPS_", env_file=".env", extra="ignore")

    @property
    def allowed_hosts(self) -> List[str]:
        """Parse allowed hosts from comma-separated string."""
        return [host.strip() for host in self.ALLOWED_HOSTS.split(",") if host.strip()]


settings = Settings()
