"""Composition root: turn `AppConfig` into a wired set of core services.

Outer layers (an HTTP app, a CLI, a worker entrypoint) call
`build_core_services()` once and use the returned `CoreServices` facade.
Every collaborator can be injected, which is how the tests run the whole
stack against in-memory stores and stub recognizers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import httpx
from google.cloud import bigquery, storage

from docflow.config import AppConfig, get_config
from docflow.logging_setup import configure_logging
from docflow.models.document import DocumentContent, ProcessingResult
from docflow.models.job import ExecutionDetails, Job, JobConfig, SourceType
from docflow.services.blob_store import GCSBlobStore, InMemoryBlobStore
from docflow.services.docai_recognizer import DocumentAIRecognizer
from docflow.services.document_pipeline import CancellationToken, DocumentPipeline, PipelineOptions
from docflow.services.interfaces import (
    BlobStore,
    ChunkRecognizer,
    ContentClassifier,
    EntityExtractor,
    JobStore,
    MetricsClient,
    RowStore,
)
from docflow.services.job_manager import JobLifecycleManager
from docflow.services.job_runner import DocumentJobRunner, JobRunner, RoutingJobRunner
from docflow.services.job_store import create_job_store_from_env
from docflow.services.metrics import NullMetrics, PrometheusMetrics
from docflow.services.nlp_service import NLPAnalyzer
from docflow.services.ocr_service import WorkerPoolOCRService
from docflow.services.result_repository import ResultRepository
from docflow.services.robots import RobotsCache
from docflow.services.row_store import BigQueryRowStore, InMemoryRowStore
from docflow.services.scheduler import JobScheduler, ScheduleEntry
from docflow.services.validation import ValidationGate
from docflow.services.web_scraper import ApiJobRunner, WebsiteJobRunner
from docflow.utils.logging_utils import structured_log

_LOG = logging.getLogger("docflow.bootstrap")


@dataclass(slots=True)
class CoreServices:
    """Callable surface exposed to the API and CLI layers."""

    config: AppConfig
    manager: JobLifecycleManager
    scheduler: JobScheduler
    pipeline: DocumentPipeline
    metrics: MetricsClient

    async def create_job(self, config: JobConfig | Mapping[str, Any]) -> Job:
        return await self.manager.create_job(config)

    async def execute_job(self, job_id: str) -> Job:
        return await self.manager.execute_job(job_id)

    async def stop_job(self, job_id: str) -> Job:
        return await self.manager.stop_job(job_id)

    async def get_job_status(self, job_id: str) -> ExecutionDetails:
        return await self.manager.get_job_status(job_id)

    async def schedule_job(self, config: JobConfig | Mapping[str, Any]) -> ScheduleEntry:
        return await self.scheduler.schedule_job(config)

    async def unschedule_job(self, job_id: str) -> ScheduleEntry:
        return await self.scheduler.unschedule_job(job_id)

    def list_scheduled_jobs(self) -> list[ScheduleEntry]:
        return self.scheduler.list_scheduled_jobs()

    async def process_document(
        self,
        document: DocumentContent,
        *,
        cancel_token: CancellationToken | None = None,
        options: PipelineOptions | None = None,
    ) -> ProcessingResult:
        return await self.pipeline.process_document(document, cancel_token=cancel_token, options=options)

    async def health_check(self) -> dict[str, Any]:
        report = await self.manager.health_check()
        report["pipeline_breakers"] = {
            name: breaker.snapshot()["state"] for name, breaker in self.pipeline.breakers.items()
        }
        report["scheduled_jobs"] = len(self.scheduler.list_scheduled_jobs())
        return report


def _storage_backends(cfg: AppConfig) -> tuple[BlobStore, RowStore]:
    if (cfg.storage_backend or "gcs").strip().lower() == "memory":
        return InMemoryBlobStore(archive_bucket=cfg.archive_bucket), InMemoryRowStore()
    project = cfg.project_id or None
    blob_store = GCSBlobStore(archive_bucket=cfg.archive_bucket, client=storage.Client(project=project))
    row_store = BigQueryRowStore(client=bigquery.Client(project=project))
    return blob_store, row_store


def _default_recognizer(cfg: AppConfig) -> ChunkRecognizer:
    if not cfg.doc_ai_processor_id:
        raise RuntimeError("DOC_AI_PROCESSOR_ID is required when no recognizer is supplied")
    return DocumentAIRecognizer(
        project_id=cfg.project_id,
        location=cfg.doc_ai_location,
        processor_id=cfg.doc_ai_processor_id,
    )


def build_core_services(
    cfg: AppConfig | None = None,
    *,
    extractor: EntityExtractor,
    classifier: ContentClassifier,
    job_store: JobStore | None = None,
    blob_store: BlobStore | None = None,
    row_store: RowStore | None = None,
    recognizer: ChunkRecognizer | None = None,
    metrics: MetricsClient | None = None,
    runners: Mapping[SourceType, JobRunner] | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> CoreServices:
    cfg = cfg or get_config()
    cfg.validate_required()
    configure_logging(cfg.log_level)
    if metrics is None:
        metrics = PrometheusMetrics.default() if cfg.metrics_enabled else NullMetrics()

    if blob_store is None or row_store is None:
        default_blob, default_row = _storage_backends(cfg)
        blob_store = blob_store or default_blob
        row_store = row_store or default_row
    pipeline_config = cfg.pipeline_config()
    results = ResultRepository(
        blob_store=blob_store,
        row_store=row_store,
        bucket=pipeline_config.results_bucket,
        table=pipeline_config.results_table,
        scrape_table=pipeline_config.scrape_table,
    )
    pipeline = DocumentPipeline(
        ocr_service=WorkerPoolOCRService(
            recognizer=recognizer or _default_recognizer(cfg),
            settings=cfg.ocr_settings(),
            metrics=metrics,
        ),
        nlp_service=NLPAnalyzer(extractor=extractor, classifier=classifier, metrics=metrics),
        blob_store=blob_store,
        results=results,
        gate=ValidationGate(cfg.validation_thresholds()),
        config=pipeline_config,
        metrics=metrics,
        sleep=sleep,
    )

    routes: dict[SourceType, JobRunner] = {
        SourceType.DOCUMENT: DocumentJobRunner(pipeline, intake_bucket=cfg.intake_bucket),
        SourceType.WEBSITE: WebsiteJobRunner(
            results,
            robots=RobotsCache(ttl_seconds=cfg.robots_cache_ttl_seconds),
            metrics=metrics,
            transport=http_transport,
            sleep=sleep,
        ),
        SourceType.API: ApiJobRunner(results, metrics=metrics, transport=http_transport, sleep=sleep),
    }
    routes.update(runners or {})
    manager = JobLifecycleManager(
        store=job_store or create_job_store_from_env(cfg),
        runner=RoutingJobRunner(routes),
        config=cfg.job_manager_config(),
        metrics=metrics,
        sleep=sleep,
    )
    scheduler = JobScheduler(manager=manager, config=cfg.scheduler_config(), metrics=metrics, sleep=sleep)
    structured_log(
        _LOG,
        logging.INFO,
        "core_services_configured",
        component=",".join(sorted(route.value for route in routes)),
        source=cfg.storage_backend,
    )
    return CoreServices(
        config=cfg,
        manager=manager,
        scheduler=scheduler,
        pipeline=pipeline,
        metrics=metrics,
    )


__all__ = ["CoreServices", "build_core_services"]
