"""Document processing records shared by the OCR, NLP and pipeline layers."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


def _now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


class PipelineStage(str, Enum):
    EXTRACT = "EXTRACT"
    OCR = "OCR"
    NLP = "NLP"
    VALIDATE = "VALIDATE"
    PERSIST = "PERSIST"


class ProcessingStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class OCRStage(str, Enum):
    PREPROCESSING = "PREPROCESSING"
    RECOGNITION = "RECOGNITION"
    POSTPROCESSING = "POSTPROCESSING"


@dataclass(slots=True)
class DocumentMetadata:
    document_id: str
    filename: str
    mime_type: str
    size_bytes: int
    uploaded_at: datetime = field(default_factory=_now_utc)
    checksum: str | None = None
    source_bucket: str | None = None


@dataclass(slots=True)
class DocumentContent:
    """A document to process; either ``content`` or ``source_path`` is set."""

    metadata: DocumentMetadata
    content: bytes | None = None
    source_path: str | None = None

    @property
    def document_id(self) -> str:
        return self.metadata.document_id


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(slots=True, frozen=True)
class Chunk:
    index: int
    data: bytes
    mime_type: str
    page_start: int | None = None
    page_end: int | None = None


@dataclass(slots=True, frozen=True)
class ChunkRecognition:
    text: str
    confidence: float


@dataclass(slots=True, frozen=True)
class PageResult:
    page_number: int
    text: str
    confidence: float


@dataclass(slots=True)
class OCRResult:
    document_id: str
    text: str
    confidence: float
    page_results: list[PageResult] = field(default_factory=list)
    chunk_count: int = 0
    processing_time_ms: int = 0
    error_rate: float = 0.0


@dataclass(slots=True)
class OCRProgress:
    document_id: str
    stage: OCRStage
    progress: int
    chunks_total: int
    chunks_done: int
    estimated_time_remaining_ms: int | None = None


@dataclass(slots=True, frozen=True)
class Entity:
    text: str
    label: str
    confidence: float
    start: int | None = None
    end: int | None = None


@dataclass(slots=True, frozen=True)
class Classification:
    label: str
    confidence: float


@dataclass(slots=True)
class NLPResult:
    document_id: str
    entities: list[Entity] = field(default_factory=list)
    classifications: list[Classification] = field(default_factory=list)
    confidence: float = 0.0
    pii_detected: list[str] = field(default_factory=list)
    processing_time_ms: int = 0
    error_rate: float = 0.0


@dataclass(slots=True, frozen=True)
class ProcessingError:
    code: str
    message: str
    stage: PipelineStage | None = None
    timestamp: datetime = field(default_factory=_now_utc)


@dataclass(slots=True, frozen=True)
class ProcessingResult:
    document_id: str
    status: ProcessingStatus
    start_time: datetime
    end_time: datetime
    processing_duration_ms: int
    retry_count: int
    trace_id: str
    error: ProcessingError | None = None
    confidence: float | None = None
    result_uri: str | None = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "processing_duration_ms": self.processing_duration_ms,
            "retry_count": self.retry_count,
            "trace_id": self.trace_id,
            "confidence": self.confidence,
            "result_uri": self.result_uri,
            "error_code": self.error.code if self.error else None,
            "error_stage": self.error.stage.value if self.error and self.error.stage else None,
        }


@dataclass(slots=True)
class PipelineMetrics:
    """Mutable per-run record kept while a document moves through the stages."""

    document_id: str
    trace_id: str
    start_time: datetime = field(default_factory=_now_utc)
    end_time: datetime | None = None
    status: ProcessingStatus = ProcessingStatus.PROCESSING
    current_stage: PipelineStage | None = None
    retry_count: int = 0
    stage_durations_ms: Dict[str, int] = field(default_factory=dict)
    max_rss_kb: int = 0
    cpu_time_seconds: float = 0.0
    result: ProcessingResult | None = None


__all__ = [
    "Chunk",
    "ChunkRecognition",
    "Classification",
    "DocumentContent",
    "DocumentMetadata",
    "Entity",
    "NLPResult",
    "OCRProgress",
    "OCRResult",
    "OCRStage",
    "PageResult",
    "PipelineMetrics",
    "PipelineStage",
    "ProcessingError",
    "ProcessingResult",
    "ProcessingStatus",
    "sha256_hex",
]
