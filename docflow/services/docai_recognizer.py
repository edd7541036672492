"""Google Document AI implementation of the per-chunk OCR recognizer."""

from __future__ import annotations

import logging
import statistics
from typing import Any, Protocol

from google.api_core import exceptions as gexc
from google.api_core.client_options import ClientOptions
from google.cloud import documentai_v1 as documentai
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from docflow.models.document import Chunk, ChunkRecognition
from docflow.services.interfaces import ChunkRecognizer

_LOG = logging.getLogger("docflow.docai_recognizer")

_TRANSIENT = (
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.TooManyRequests,
    gexc.InternalServerError,
)


class _DocAIClientProtocol(Protocol):  # pragma: no cover - structural typing aid
    def process_document(self, request: Any) -> Any:  # noqa: D401
        ...


def _default_client(location: str) -> _DocAIClientProtocol:
    return documentai.DocumentProcessorServiceClient(
        client_options=ClientOptions(api_endpoint=f"{location}-documentai.googleapis.com")
    )


def _page_confidence(page: Any) -> float | None:
    layout = getattr(page, "layout", None)
    confidence = getattr(layout, "confidence", None)
    if confidence is None:
        return None
    return float(confidence)


class DocumentAIRecognizer(ChunkRecognizer):
    """Send one chunk per request to a Document AI OCR processor.

    Chunk confidence is the mean of the page layout confidences the processor
    reports. Transient API errors are retried three times before surfacing.
    """

    def __init__(
        self,
        *,
        project_id: str,
        location: str,
        processor_id: str,
        client: _DocAIClientProtocol | None = None,
    ) -> None:
        if not (project_id and processor_id):
            raise ValueError("project_id and processor_id are required for Document AI")
        self._client = client or _default_client(location)
        self.processor_name = f"projects/{project_id}/locations/{location}/processors/{processor_id}"

    def recognize(self, chunk: Chunk) -> ChunkRecognition:
        response = self._process(chunk)
        document = getattr(response, "document", response)
        text = getattr(document, "text", "") or ""
        confidences = [
            value
            for value in (_page_confidence(page) for page in getattr(document, "pages", []) or [])
            if value is not None
        ]
        confidence = statistics.fmean(confidences) if confidences else 0.0
        _LOG.debug(
            "docai_chunk_recognized",
            extra={"chunk_index": chunk.index, "text_length": len(text), "confidence": confidence},
        )
        return ChunkRecognition(text=text, confidence=confidence)

    @retry(
        retry=retry_if_exception_type(_TRANSIENT),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    def _process(self, chunk: Chunk) -> Any:
        request = {
            "name": self.processor_name,
            "raw_document": {"content": chunk.data, "mime_type": chunk.mime_type},
        }
        return self._client.process_document(request=request)


__all__ = ["DocumentAIRecognizer"]
