"""Collaborator interfaces consumed by the docflow core."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from docflow.config import OCRSettings
from docflow.models.document import (
    Chunk,
    ChunkRecognition,
    Classification,
    DocumentContent,
    Entity,
    NLPResult,
    OCRProgress,
    OCRResult,
)
from docflow.models.job import ExecutionDetails, Job, JobFilter, JobStatus


@dataclass(slots=True, frozen=True)
class FileRef:
    bucket: str
    path: str
    size_bytes: int
    generation: str | None = None

    @property
    def uri(self) -> str:
        return f"gs://{self.bucket}/{self.path}"


@dataclass(slots=True)
class UploadOptions:
    content_type: str = "application/octet-stream"
    metadata: dict[str, str] = field(default_factory=dict)
    if_not_exists: bool = False


class JobStore(Protocol):
    """Persistence for job records with compare-and-swap status updates."""

    async def create(self, job: Job) -> Job: ...

    async def get(self, job_id: str) -> Job: ...

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        execution_details: ExecutionDetails,
        expected_version: int,
        *,
        retry_count: int | None = None,
    ) -> Job: ...

    async def list(self, job_filter: JobFilter | None = None) -> list[Job]: ...


class BlobStore(Protocol):
    async def upload(
        self, bucket: str, path: str, data: bytes, options: UploadOptions | None = None
    ) -> FileRef: ...

    async def download(self, bucket: str, path: str) -> bytes: ...

    async def delete(self, bucket: str, path: str) -> None: ...

    async def move_to_archive(self, bucket: str, path: str, retention_days: int) -> FileRef: ...


class RowStore(Protocol):
    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> None: ...

    async def query(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]: ...


class ChunkRecognizer(Protocol):
    """Black-box OCR engine invoked once per chunk from a worker thread."""

    def recognize(self, chunk: Chunk) -> ChunkRecognition: ...


class OCRService(Protocol):
    async def process_document(
        self, document: DocumentContent, config: OCRSettings | None = None
    ) -> OCRResult: ...

    def get_progress(self, document_id: str) -> OCRProgress: ...

    def cancel_processing(self, document_id: str) -> None: ...


class EntityExtractor(Protocol):
    async def extract_entities(self, text: str) -> list[Entity]: ...


class ContentClassifier(Protocol):
    async def classify(self, text: str) -> list[Classification]: ...


class NLPService(Protocol):
    async def process_text(self, ocr_result: OCRResult) -> NLPResult: ...


class MetricsClient(Protocol):
    """Fire-and-forget metrics sink; implementations must not raise."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None: ...

    def increment(self, name: str, amount: int = 1, **labels: str) -> None: ...

    def record_metric(self, name: str, value: float, **labels: str) -> None: ...


__all__ = [
    "BlobStore",
    "ChunkRecognizer",
    "ContentClassifier",
    "EntityExtractor",
    "FileRef",
    "JobStore",
    "MetricsClient",
    "NLPService",
    "OCRService",
    "RowStore",
    "UploadOptions",
]
