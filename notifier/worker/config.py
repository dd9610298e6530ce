from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkerSettings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5
    telegram_bot_token: str | None = None
    telegram_api_base_url: str = "https://api.telegram.org"
    send_timeout_seconds: float = 10.0
    concurrency: int = 5
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_lease_seconds: int = 120
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    job_max_attempts: int = 5
    job_retry_base_seconds: float = 1.0
    job_retry_max_seconds: float = 3600.0
    job_keep_completed: int = 1000
    otel_enabled: bool = True
    otel_service_name: str = "notifier-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="NOTIFIER_WORKER_", extra="ignore")


@lru_cache
def get_worker_settings() -> WorkerSettings:
    return WorkerSettings()
