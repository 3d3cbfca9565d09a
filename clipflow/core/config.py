from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "clipflow-api"
    environment: str = "production"
    api_key_header: str = "X-API-Key"
    public_base_url: str = "http://localhost:8000"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_auto_migrate: bool = True
    machine_credentials_json: str | None = None

    primary_provider_name: str = "provider_a"
    primary_provider_url: str = "http://localhost:9001"
    primary_provider_api_key: str | None = None
    fallback_provider_name: str = "provider_b"
    fallback_provider_url: str = "http://localhost:9002"
    fallback_provider_api_key: str | None = None
    provider_timeout_seconds: float = 20.0

    publish_url: str = "http://localhost:9003/uploads"
    publish_api_key: str | None = None
    publish_timeout_seconds: float = 60.0
    publish_max_retries: int = 5
    publish_retry_base_seconds: int = 30
    publish_retry_max_seconds: int = 900
    default_visibility: str = "unlisted"
    fanout_webhook_url: str | None = None
    fanout_attempts: int = 3
    fanout_backoff_base_seconds: float = 0.4
    alert_webhook_url: str | None = None

    rate_limit_default_limit: int = 30
    rate_limit_default_window_seconds: int = 60
    provider_egress_limit: int | None = None
    provider_egress_window_seconds: int | None = None
    publish_egress_limit: int | None = None
    publish_egress_window_seconds: int | None = None

    idempotency_ttl_seconds: int = 60 * 60 * 24
    fingerprint_attribute_keys: list[str] = ["match_id", "period", "sequence"]

    processing_timeout_seconds: int = 900
    publish_timeout_sweep_seconds: int = 600
    sweep_batch_size: int = 100
    dispatch_grace_seconds: int = 30

    otel_enabled: bool = True
    otel_service_name: str = "clipflow-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CLIPFLOW_", extra="ignore")


class WorkerSettings(BaseSettings):
    environment: str = "production"
    api_base_url: str = "http://localhost:8000"
    module_id: str = "local-sweeper"
    api_key: str = "local-sweeper-key"
    sweep_interval_seconds: float = 5.0
    request_timeout_seconds: float = 30.0
    max_backoff_seconds: float = 60.0
    otel_enabled: bool = True
    otel_service_name: str = "clipflow-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CLIPFLOW_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_worker_settings() -> WorkerSettings:
    return WorkerSettings()
