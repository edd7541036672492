from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

import pytest

from docflow.config import OCRSettings, PipelineConfig
from docflow.models.document import DocumentContent, DocumentMetadata
from docflow.services.blob_store import InMemoryBlobStore
from docflow.services.document_pipeline import DocumentPipeline
from docflow.services.nlp_service import NLPAnalyzer
from docflow.services.ocr_service import WorkerPoolOCRService
from docflow.services.result_repository import ResultRepository
from docflow.services.row_store import InMemoryRowStore
from tests.stubs.pipeline_stubs import ScriptedRecognizer, StubClassifier, StubExtractor


class SleepRecorder:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def no_sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def job_config_factory() -> Callable[..., Dict[str, Any]]:
    def _make(**overrides: Any) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": "nightly-ingest",
            "source": {"type": "DOCUMENT", "documents": ["gs://intake/docs/a.txt"]},
            "options": {"retry_attempts": 3, "retry_delay_ms": 10},
        }
        payload.update(overrides)
        return payload

    return _make


@pytest.fixture
def text_document() -> Callable[..., DocumentContent]:
    def _make(
        text: str | bytes = "Invoice total 42 for Acme Corp",
        *,
        document_id: str = "doc-1",
        filename: str = "note.txt",
        mime_type: str = "text/plain",
    ) -> DocumentContent:
        data = text.encode("utf-8") if isinstance(text, str) else text
        metadata = DocumentMetadata(
            document_id=document_id,
            filename=filename,
            mime_type=mime_type,
            size_bytes=len(data),
        )
        return DocumentContent(metadata=metadata, content=data)

    return _make


@dataclass
class PipelineHarness:
    pipeline: DocumentPipeline
    ocr: WorkerPoolOCRService
    recognizer: ScriptedRecognizer
    extractor: StubExtractor
    classifier: StubClassifier
    blob_store: InMemoryBlobStore
    row_store: InMemoryRowStore
    sleeps: SleepRecorder


@pytest.fixture
def pipeline_factory(no_sleep: SleepRecorder) -> Callable[..., PipelineHarness]:
    def _make(
        *,
        recognizer: ScriptedRecognizer | None = None,
        extractor: StubExtractor | None = None,
        classifier: StubClassifier | None = None,
        chunk_size_bytes: int = 1024,
        worker_count: int = 2,
        config: PipelineConfig | None = None,
    ) -> PipelineHarness:
        recognizer = recognizer or ScriptedRecognizer()
        extractor = extractor or StubExtractor()
        classifier = classifier or StubClassifier()
        blob_store = InMemoryBlobStore()
        row_store = InMemoryRowStore()
        cfg = config or PipelineConfig()
        ocr = WorkerPoolOCRService(
            recognizer=recognizer,
            settings=OCRSettings(worker_count=worker_count, chunk_size_bytes=chunk_size_bytes),
        )
        pipeline = DocumentPipeline(
            ocr_service=ocr,
            nlp_service=NLPAnalyzer(extractor=extractor, classifier=classifier),
            blob_store=blob_store,
            results=ResultRepository(
                blob_store=blob_store,
                row_store=row_store,
                bucket=cfg.results_bucket,
                table=cfg.results_table,
            ),
            config=cfg,
            sleep=no_sleep,
        )
        return PipelineHarness(
            pipeline=pipeline,
            ocr=ocr,
            recognizer=recognizer,
            extractor=extractor,
            classifier=classifier,
            blob_store=blob_store,
            row_store=row_store,
            sleeps=no_sleep,
        )

    return _make
