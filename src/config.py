"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    allowed_origins: str = ""  # Comma-separated CORS origins

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Sentry
    sentry_dsn: str = ""

    # Ingress
    webhook_max_body_bytes: int = 1024 * 1024  # 1 MiB
    webhook_rate_limit: int = 120  # requests per window per source
    webhook_ip_rate_limit: int = 300  # requests per window per client IP
    webhook_rate_window_seconds: int = 60
    ingress_budget_seconds: float = 2.0
    token_hash_pepper: str

    # Durable event queue
    queue_max_attempts: int = 3
    queue_lease_seconds: int = 30
    queue_batch_size: int = 10
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 16.0
    backoff_jitter_ratio: float = 0.2
    dedup_time_bucket_seconds: int = 300

    # Dispatcher workers (disable to run an ingress-only process)
    dispatcher_enabled: bool = True
    worker_count: int = 4
    worker_poll_interval_seconds: int = 5
    handler_timeout_seconds: float = 20.0  # Must stay below queue_lease_seconds

    # Circuit breaker (upstream metrics API)
    breaker_failure_threshold: int = 5
    breaker_window_seconds: int = 60
    breaker_cooldown_seconds: int = 30

    # Upstream metrics API (GitHub REST)
    github_api_base_url: str = "https://api.github.com"
    github_api_token: str = ""
    github_api_timeout_seconds: float = 5.0

    # Administration
    admin_api_key: str = ""
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
