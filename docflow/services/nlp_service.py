"""NLP enrichment: entity extraction and classification over OCR text."""

from __future__ import annotations

import asyncio
import logging
import statistics
import time

from docflow.errors import ValidationError
from docflow.models.document import Classification, Entity, NLPResult, OCRResult
from docflow.services.interfaces import ContentClassifier, EntityExtractor, MetricsClient, NLPService
from docflow.services.metrics import NullMetrics
from docflow.utils.logging_utils import structured_log
from docflow.utils.redact import detect_pii

_LOG = logging.getLogger("docflow.nlp_service")


def _mean_confidence(items: list[Entity] | list[Classification]) -> float | None:
    if not items:
        return None
    return statistics.fmean(item.confidence for item in items)


class NLPAnalyzer(NLPService):
    """Run the extractor and classifier concurrently and combine their output.

    Overall confidence is the average of the mean entity confidence and the
    mean classification confidence; when only one side produced output its
    mean is used alone.
    """

    def __init__(
        self,
        *,
        extractor: EntityExtractor,
        classifier: ContentClassifier,
        metrics: MetricsClient | None = None,
        min_ocr_confidence: float | None = None,
    ) -> None:
        self._extractor = extractor
        self._classifier = classifier
        self._metrics = metrics or NullMetrics()
        self._min_ocr_confidence = min_ocr_confidence

    async def process_text(self, ocr_result: OCRResult) -> NLPResult:
        text = ocr_result.text or ""
        if not text.strip():
            raise ValidationError(
                "OCR produced no text to analyse",
                field="text",
                constraint="non_empty",
                value="",
            )
        if self._min_ocr_confidence is not None and ocr_result.confidence < self._min_ocr_confidence:
            raise ValidationError(
                "OCR confidence below NLP input threshold",
                field="confidence",
                constraint=f">= {self._min_ocr_confidence}",
                value=ocr_result.confidence,
            )
        started = time.perf_counter()
        entities, classifications = await asyncio.gather(
            self._extractor.extract_entities(text),
            self._classifier.classify(text),
        )
        parts = [
            value
            for value in (_mean_confidence(entities), _mean_confidence(classifications))
            if value is not None
        ]
        duration_ms = int((time.perf_counter() - started) * 1000)
        result = NLPResult(
            document_id=ocr_result.document_id,
            entities=list(entities),
            classifications=list(classifications),
            confidence=statistics.fmean(parts) if parts else 0.0,
            pii_detected=detect_pii(text),
            processing_time_ms=duration_ms,
        )
        self._metrics.observe_latency("nlp_document", duration_ms / 1000.0, stage="nlp")
        structured_log(
            _LOG,
            logging.INFO,
            "nlp_completed",
            document_id=ocr_result.document_id,
            entity_count=len(result.entities),
            confidence=round(result.confidence, 4),
            duration_ms=duration_ms,
        )
        return result


__all__ = ["NLPAnalyzer"]
