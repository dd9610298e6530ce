from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "notifier-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    webhook_secret: str | None = None
    otp_ttl_minutes: int = 10
    otp_max_attempts: int = 5
    job_max_attempts: int = 5
    job_retry_base_seconds: float = 1.0
    job_retry_max_seconds: float = 3600.0
    job_keep_completed: int = 1000
    ops_api_key: str | None = None
    mail_from: str = "Notify <no-reply@example.com>"
    mail_smtp_host: str | None = None
    mail_smtp_port: int | None = None
    mail_smtp_user: str | None = None
    mail_smtp_password: str | None = None
    mail_smtp_starttls: bool = False
    mail_smtp_ssl: bool = False
    mail_timeout_seconds: float = 10.0
    otel_enabled: bool = True
    otel_service_name: str = "notifier-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="NOTIFIER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
