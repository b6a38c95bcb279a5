"""Application configuration management."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.debug and self.log_level.upper() != "TRACE":
            self.log_level = "DEBUG"

    # Database
    database_url: str = "sqlite:///./jira_sync.db"

    # Security
    secret_key: str = "change-me-in-production"
    encryption_key: Optional[str] = None
    access_token_expire_minutes: int = 1440

    # CORS
    cors_origins: str = "http://localhost:5173"

    # Operator account for the operational API
    admin_username: str = "admin"
    admin_password: str = "changeme"

    # Application
    debug: bool = False
    log_level: str = "INFO"
    api_v1_str: str = "/api/v1"

    # Jira connection (seed values for the stored settings row)
    jira_host: Optional[str] = None
    jira_email: Optional[str] = None
    jira_api_token: Optional[str] = None
    jira_api_version: int = 3
    jira_project_keys: str = ""

    # Rate limiting and retries
    requests_per_second: float = 10.0
    rate_limit_pause_every: int = 10
    rate_limit_pause_seconds: float = 0.5
    max_retry_attempts: int = 3
    backoff_base_seconds: float = 1.0
    retry_after_fallback_seconds: float = 60.0
    request_timeout_seconds: float = 30.0

    # Pagination
    issue_page_size: int = 50
    worklog_page_size: int = 100
    max_batches: int = 5000

    # Validation
    discrepancy_threshold_percent: float = 5.0
    validation_sample_size: int = 5
    validation_spot_check_size: int = 10
    enable_post_sync_validation: bool = True

    # Maintenance
    stale_run_minutes: int = 15
    checkpoint_retention_days: int = 30
    cache_ttl_seconds: int = 600

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def jira_project_keys_list(self) -> List[str]:
        """Parse configured project keys from comma-separated string."""
        return [key.strip().upper() for key in self.jira_project_keys.split(",") if key.strip()]


# Global settings instance
settings = Settings()
