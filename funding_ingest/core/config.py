from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "funding-ingest"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    cron_secret: str | None = None
    stale_review_days: int = 90
    min_title_length: int = 10
    title_similarity_threshold: float = 0.7
    amount_change_tolerance: float = 0.05
    filter_min_final_score: float = 2.0
    job_max_retries: int = 3
    stuck_job_timeout_minutes: int = 5
    default_chunk_size: int = 5
    job_retention_days: int = 30
    extraction_base_url: str | None = None
    enrichment_base_url: str | None = None
    collaborator_api_key: str | None = None
    collaborator_timeout_seconds: float = 60.0
    tokens_per_enrichment: int = 1500
    cost_per_1k_tokens: float = 0.01
    worker_poll_interval_seconds: float = 60.0
    worker_max_backoff_seconds: float = 300.0
    worker_cleanup_interval_seconds: float = 3600.0
    otel_enabled: bool = True
    otel_service_name: str = "funding-ingest"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="FI_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
