"""Scripted OCR and NLP collaborators for pipeline and job tests."""

from __future__ import annotations

import threading
from typing import Callable, Sequence

from docflow.models.document import Chunk, ChunkRecognition, Classification, Entity


class ScriptedRecognizer:
    """Return a fixed confidence per chunk index.

    Text chunks are echoed back so the merged OCR text equals the input;
    binary chunks produce ``page-<n>`` placeholders.
    """

    def __init__(
        self,
        confidences: Sequence[float] = (),
        *,
        default_confidence: float = 0.95,
        fail_on: dict[int, Exception] | None = None,
        on_chunk: Callable[[Chunk], None] | None = None,
    ) -> None:
        self._confidences = list(confidences)
        self._default = default_confidence
        self._fail_on = dict(fail_on or {})
        self._on_chunk = on_chunk
        self._lock = threading.Lock()
        self.seen: list[int] = []
        self.threads: set[str] = set()

    def recognize(self, chunk: Chunk) -> ChunkRecognition:
        with self._lock:
            self.seen.append(chunk.index)
            self.threads.add(threading.current_thread().name)
        if self._on_chunk is not None:
            self._on_chunk(chunk)
        if chunk.index in self._fail_on:
            raise self._fail_on[chunk.index]
        if chunk.mime_type.startswith("text/"):
            text = chunk.data.decode("utf-8")
        else:
            text = f"page-{chunk.index + 1} "
        if chunk.index < len(self._confidences):
            confidence = self._confidences[chunk.index]
        else:
            confidence = self._default
        return ChunkRecognition(text=text, confidence=confidence)


class StubExtractor:
    def __init__(self, entities: Sequence[Entity] | None = None, *, error: Exception | None = None) -> None:
        self._entities = list(entities) if entities is not None else [
            Entity(text="Acme Corp", label="ORG", confidence=0.9),
        ]
        self._error = error
        self.calls = 0

    async def extract_entities(self, text: str) -> list[Entity]:
        self.calls += 1
        if self._error is not None:
            raise self._error
        return list(self._entities)


class StubClassifier:
    def __init__(self, classifications: Sequence[Classification] | None = None) -> None:
        self._classifications = list(classifications) if classifications is not None else [
            Classification(label="invoice", confidence=0.8),
        ]
        self.calls = 0

    async def classify(self, text: str) -> list[Classification]:
        self.calls += 1
        return list(self._classifications)
