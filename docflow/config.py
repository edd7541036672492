"""Runtime configuration for the docflow ingestion core.

Environment variables are read once through ``AppConfig`` (pydantic-settings).
Components never read ``AppConfig`` directly; the composition root turns it
into the small frozen config models below, which validate their ranges at
construction time.

Commonly used variables (env names in parentheses):
 - PROJECT_ID
 - JOB_STATE_BACKEND (memory | gcs) and JOB_STATE_BUCKET / JOB_STATE_PREFIX
 - STORAGE_BACKEND (gcs | memory), RESULTS_BUCKET, ARCHIVE_BUCKET, INTAKE_BUCKET
 - BIGQUERY_DATASET / BIGQUERY_RESULTS_TABLE
 - OCR_WORKER_COUNT, OCR_CHUNK_SIZE_BYTES
 - MIN_CONFIDENCE
"""
from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_MIME_TYPES: tuple[str, ...] = (
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/tiff",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
    "text/html",
)


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class _ComponentConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class CircuitBreakerConfig(_ComponentConfig):
    timeout_seconds: float = Field(30.0, gt=0, le=300)
    error_threshold_percentage: float = Field(50.0, gt=0, le=100)
    reset_timeout_seconds: float = Field(30.0, ge=0)
    rolling_window_seconds: float = Field(10.0, gt=0)
    minimum_requests: int = Field(20, ge=1)


class RetryConfig(_ComponentConfig):
    max_attempts: int = Field(3, ge=1, le=10)
    base_delay_seconds: float = Field(1.0, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1)
    max_delay_seconds: float = Field(30.0, ge=0)

    @model_validator(mode="after")
    def _cap_not_below_base(self) -> "RetryConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class OCRSettings(_ComponentConfig):
    worker_count: int = Field(4, ge=1, le=32)
    chunk_size_bytes: int = Field(1024 * 1024, ge=1)
    pdf_pages_per_chunk: int = Field(10, ge=1)
    language: str = "eng"


class ValidationThresholds(_ComponentConfig):
    min_confidence: float = Field(0.8, ge=0, le=1)
    max_error_rate: float = Field(0.001, ge=0, le=1)
    max_stage_time_ms: int = Field(300_000, gt=0)
    max_file_size_bytes: int = Field(50 * 1024 * 1024, gt=0)
    max_filename_length: int = Field(255, gt=0)
    filename_pattern: str = r"^[\w\-. ]+$"
    allowed_mime_types: tuple[str, ...] = DEFAULT_ALLOWED_MIME_TYPES


class JobManagerConfig(_ComponentConfig):
    max_total_retries: int = Field(10, ge=0)
    breaker: CircuitBreakerConfig = CircuitBreakerConfig()


class PipelineConfig(_ComponentConfig):
    results_bucket: str = "docflow-results"
    results_table: str = "processing_results"
    scrape_table: str = "scrape_results"
    metrics_retention_seconds: float = Field(300.0, gt=0)
    metrics_max_entries: int = Field(1024, ge=1)
    ocr_breaker: CircuitBreakerConfig = CircuitBreakerConfig(timeout_seconds=300)
    nlp_breaker: CircuitBreakerConfig = CircuitBreakerConfig(timeout_seconds=300)
    storage_breaker: CircuitBreakerConfig = CircuitBreakerConfig()
    ocr_retry: RetryConfig = RetryConfig(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=10.0)
    nlp_retry: RetryConfig = RetryConfig()
    storage_retry: RetryConfig = RetryConfig()


class SchedulerConfig(_ComponentConfig):
    breaker: CircuitBreakerConfig = CircuitBreakerConfig(reset_timeout_seconds=60)
    poll_interval_seconds: float = Field(1.0, gt=0)


class AppConfig(BaseSettings):
    project_id: str = Field('', validation_alias='PROJECT_ID')
    region: str = Field('us', validation_alias='REGION')
    job_state_backend: str = Field('memory', validation_alias='JOB_STATE_BACKEND')
    job_state_bucket: str | None = Field(
        None, validation_alias=AliasChoices('JOB_STATE_BUCKET', 'STATE_BUCKET')
    )
    job_state_prefix: str = Field('job-state', validation_alias='JOB_STATE_PREFIX')
    job_cache_ttl_seconds: float = Field(300.0, validation_alias='JOB_CACHE_TTL_SECONDS')
    job_cache_max_entries: int = Field(1024, validation_alias='JOB_CACHE_MAX_ENTRIES')
    job_max_total_retries: int = Field(10, validation_alias='JOB_MAX_TOTAL_RETRIES')
    storage_backend: str = Field('gcs', validation_alias='STORAGE_BACKEND')
    results_bucket: str = Field('docflow-results', validation_alias='RESULTS_BUCKET')
    archive_bucket: str = Field('docflow-archive', validation_alias='ARCHIVE_BUCKET')
    intake_bucket: str = Field('docflow-intake', validation_alias='INTAKE_BUCKET')
    bigquery_dataset: str = Field('docflow', validation_alias='BIGQUERY_DATASET')
    bigquery_results_table: str = Field('processing_results', validation_alias='BIGQUERY_RESULTS_TABLE')
    bigquery_scrape_table: str = Field('scrape_results', validation_alias='BIGQUERY_SCRAPE_TABLE')
    robots_cache_ttl_seconds: float = Field(3600.0, validation_alias='ROBOTS_CACHE_TTL_SECONDS')
    doc_ai_location: str = Field('us', validation_alias=AliasChoices('DOC_AI_LOCATION', 'REGION'))
    doc_ai_processor_id: str | None = Field(None, validation_alias='DOC_AI_PROCESSOR_ID')
    ocr_worker_count: int = Field(4, validation_alias='OCR_WORKER_COUNT')
    ocr_chunk_size_bytes: int = Field(1024 * 1024, validation_alias='OCR_CHUNK_SIZE_BYTES')
    ocr_timeout_seconds: float = Field(300.0, validation_alias='OCR_TIMEOUT_SECONDS')
    nlp_timeout_seconds: float = Field(300.0, validation_alias='NLP_TIMEOUT_SECONDS')
    control_timeout_seconds: float = Field(30.0, validation_alias='CONTROL_TIMEOUT_SECONDS')
    breaker_error_threshold: float = Field(50.0, validation_alias='BREAKER_ERROR_THRESHOLD')
    breaker_reset_seconds: float = Field(30.0, validation_alias='BREAKER_RESET_SECONDS')
    breaker_window_seconds: float = Field(10.0, validation_alias='BREAKER_WINDOW_SECONDS')
    breaker_minimum_requests: int = Field(20, validation_alias='BREAKER_MINIMUM_REQUESTS')
    min_confidence: float = Field(0.8, validation_alias='MIN_CONFIDENCE')
    max_file_size_bytes: int = Field(50 * 1024 * 1024, validation_alias='MAX_FILE_SIZE_BYTES')
    metrics_enabled_raw: str | bool | None = Field(True, validation_alias='METRICS_ENABLED')
    log_level: str = Field('INFO', validation_alias='LOG_LEVEL')

    model_config = SettingsConfigDict(env_file='.env', extra='ignore', case_sensitive=False)

    @property
    def metrics_enabled(self) -> bool:
        raw = self.metrics_enabled_raw
        if isinstance(raw, bool):
            return raw
        return parse_bool(str(raw))

    def _breaker(self, timeout_seconds: float, **overrides: Any) -> CircuitBreakerConfig:
        values: dict[str, Any] = {
            "timeout_seconds": timeout_seconds,
            "error_threshold_percentage": self.breaker_error_threshold,
            "reset_timeout_seconds": self.breaker_reset_seconds,
            "rolling_window_seconds": self.breaker_window_seconds,
            "minimum_requests": self.breaker_minimum_requests,
        }
        values.update(overrides)
        return CircuitBreakerConfig(**values)

    def job_manager_config(self) -> JobManagerConfig:
        return JobManagerConfig(
            max_total_retries=self.job_max_total_retries,
            breaker=self._breaker(self.control_timeout_seconds),
        )

    def pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            results_bucket=self.results_bucket,
            results_table=f"{self.bigquery_dataset}.{self.bigquery_results_table}",
            scrape_table=f"{self.bigquery_dataset}.{self.bigquery_scrape_table}",
            ocr_breaker=self._breaker(self.ocr_timeout_seconds),
            nlp_breaker=self._breaker(self.nlp_timeout_seconds),
            storage_breaker=self._breaker(self.control_timeout_seconds),
        )

    def ocr_settings(self) -> OCRSettings:
        return OCRSettings(
            worker_count=self.ocr_worker_count,
            chunk_size_bytes=self.ocr_chunk_size_bytes,
        )

    def validation_thresholds(self) -> ValidationThresholds:
        return ValidationThresholds(
            min_confidence=self.min_confidence,
            max_file_size_bytes=self.max_file_size_bytes,
        )

    def scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig(
            breaker=self._breaker(self.control_timeout_seconds, reset_timeout_seconds=60.0)
        )

    def validate_required(self) -> None:
        backend = (self.job_state_backend or "memory").strip().lower()
        if backend not in {"memory", "gcs"}:
            raise RuntimeError(f"Unsupported JOB_STATE_BACKEND '{self.job_state_backend}'")
        storage = (self.storage_backend or "gcs").strip().lower()
        if storage not in {"memory", "gcs"}:
            raise RuntimeError(f"Unsupported STORAGE_BACKEND '{self.storage_backend}'")
        missing: list[str] = []
        if backend == "gcs":
            if not self.job_state_bucket:
                missing.append("JOB_STATE_BUCKET")
            if not self.project_id:
                missing.append("PROJECT_ID")
        if storage == "gcs" and not self.project_id and "PROJECT_ID" not in missing:
            missing.append("PROJECT_ID")
        if missing:
            raise RuntimeError("Missing required configuration values: " + ", ".join(sorted(missing)))


@lru_cache
def get_config() -> AppConfig:
    return AppConfig()  # type: ignore[call-arg]


__all__ = [
    "AppConfig",
    "CircuitBreakerConfig",
    "RetryConfig",
    "OCRSettings",
    "ValidationThresholds",
    "JobManagerConfig",
    "PipelineConfig",
    "SchedulerConfig",
    "DEFAULT_ALLOWED_MIME_TYPES",
    "get_config",
    "parse_bool",
]
