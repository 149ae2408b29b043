"""Application configuration management."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Tuple, Optional


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
    database_url: str

    # Security
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 1440

    # CORS
    cors_origins: str = "http://localhost:5173"

    # Operator account
    admin_username: str = "admin"
    admin_password: str = "changeme"

    # Application
    debug: bool = False
    log_level: str = "INFO"
    api_v1_str: str = "/api/v1"

    # Catalog source (point-of-sale)
    catalog_base_url: str = "https://pos.example.com/api"
    catalog_api_token: str = "your_catalog_api_token"
    catalog_page_size: int = 100

    # Delivery platform
    delivery_base_url: str = "https://delivery.example.com/api"
    delivery_api_token: str = "your_delivery_api_token"

    # Scheduler
    scheduler_enabled: bool = True

    # Scheduled sync: comma separated "account:branch:vendor" entries, branch may be empty
    sync_scopes: str = ""
    sync_schedule_cron: str = "0 * * * *"
    sync_max_concurrency: int = 4

    # Retry / circuit breaker / timeouts
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 300.0
    retry_backoff_multiplier: float = 2.0
    retry_jitter_factor: float = 0.1
    circuit_failure_threshold: int = 5
    circuit_open_seconds: float = 60.0
    circuit_sampling_seconds: float = 10.0
    operation_timeout_seconds: float = 600.0
    http_timeout_seconds: float = 300.0

    # Idempotency
    idempotency_retention_days: int = 30
    lock_stale_after_minutes: int = 30

    # Dead letter queue
    dlq_auto_retry_enabled: bool = True
    dlq_max_retry_age_hours: int = 24
    dlq_processing_interval_minutes: int = 5
    dlq_cleanup_interval_hours: int = 6
    dlq_retention_days: int = 30

    # Batching
    batch_size: int = 50
    batch_max_concurrency: int = 4
    adaptive_batch_threshold: int = 200

    # Retention
    delta_retention_days: int = 90
    audit_retention_days: int = 90

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def sync_scopes_list(self) -> List[Tuple[str, Optional[str], str]]:
        """Parse scheduled sync scopes into (account_id, branch_id, vendor_code) tuples."""
        scopes = []
        for entry in self.sync_scopes.split(","):
            entry = entry.strip()
            if not entry:
                continue
            parts = [p.strip() for p in entry.split(":")]
            if len(parts) != 3 or not parts[0] or not parts[2]:
                raise ValueError(f"Invalid sync scope '{entry}', expected 'account:branch:vendor'")
            scopes.append((parts[0], parts[1] or None, parts[2]))
        return scopes


# Global settings instance
settings = Settings()
