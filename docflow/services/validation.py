"""Data-quality gates applied at pipeline boundaries.

Three checkpoints, each usable on its own:

* `ValidationGate.validate_pre_processing` - document metadata and raw bytes
  before any work is done.
* `ValidationGate.validate_intermediate` - shape, error rate and elapsed time
  of a stage's output.
* `ValidationGate.validate_post_processing` - final result schema, minimum
  confidence and page-number uniqueness.

The gate does no I/O. Each failure raises `docflow.errors.ValidationError`
naming the field and constraint, with the offending value redacted and the
steps that already passed.
"""

from __future__ import annotations

import dataclasses
import posixpath
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from docflow.config import ValidationThresholds
from docflow.errors import ValidationError
from docflow.models.document import DocumentContent, PipelineStage
from docflow.utils.redact import redact_value

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

EXTENSIONS_BY_MIME: dict[str, frozenset[str]] = {
    "application/pdf": frozenset({".pdf"}),
    "image/jpeg": frozenset({".jpg", ".jpeg"}),
    "image/png": frozenset({".png"}),
    "image/tiff": frozenset({".tif", ".tiff"}),
    DOCX_MIME: frozenset({".docx"}),
    "text/plain": frozenset({".txt", ".text"}),
    "text/html": frozenset({".html", ".htm"}),
}

MAGIC_BYTES: dict[str, tuple[bytes, ...]] = {
    "application/pdf": (b"%PDF",),
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/png": (b"\x89PNG",),
    "image/tiff": (b"II*\x00", b"MM\x00*"),
    DOCX_MIME: (b"PK\x03\x04",),
}

REQUIRED_INTERMEDIATE_FIELDS: dict[str, tuple[str, ...]] = {
    PipelineStage.OCR.value: ("document_id", "text", "confidence"),
    PipelineStage.NLP.value: ("document_id", "entities", "classifications", "confidence"),
}


@dataclass(slots=True)
class ValidationContext:
    stage: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_steps: list[str] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    def passed(self, step: str) -> None:
        self.completed_steps.append(step)

    def fail(
        self,
        step: str,
        message: str,
        *,
        field_name: str,
        constraint: str,
        value: Any = None,
    ) -> ValidationError:
        redacted = redact_value(field_name, value)
        self.failures.append(
            {
                "stage": self.stage,
                "error": message,
                "context": {"step": step, "field": field_name, "constraint": constraint, "value": redacted},
            }
        )
        error = ValidationError(
            message,
            field=field_name,
            constraint=constraint,
            value=redacted,
            passed_steps=self.completed_steps,
        )
        error.context["checkpoint"] = self.stage
        return error


class _MetadataSchema(BaseModel):
    document_id: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    mime_type: str = Field(min_length=1)
    size_bytes: int = Field(ge=0)
    uploaded_at: datetime


class _PageSchema(BaseModel):
    page_number: int = Field(ge=1)
    text: str
    confidence: float = Field(ge=0, le=1)


class _FinalResultSchema(BaseModel):
    document_id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    confidence: float = Field(ge=0, le=1)
    page_results: list[_PageSchema] = Field(default_factory=list)


def _as_mapping(value: Any) -> Mapping[str, Any] | None:
    if isinstance(value, Mapping):
        return value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return None


def _first_error(exc: PydanticValidationError) -> tuple[str, str, Any]:
    error = exc.errors()[0]
    field_name = ".".join(str(part) for part in error.get("loc", ())) or "result"
    return field_name, error.get("type", "invalid"), error.get("input")


class ValidationGate:
    def __init__(self, thresholds: ValidationThresholds | None = None) -> None:
        self.thresholds = thresholds or ValidationThresholds()
        self._filename_re = re.compile(self.thresholds.filename_pattern)

    def validate_pre_processing(
        self, document: DocumentContent, *, now: datetime | None = None
    ) -> ValidationContext:
        ctx = ValidationContext(stage="pre_processing")
        limits = self.thresholds
        metadata = document.metadata

        try:
            _MetadataSchema.model_validate(dataclasses.asdict(metadata))
        except PydanticValidationError as exc:
            field_name, constraint, value = _first_error(exc)
            raise ctx.fail(
                "metadata_schema",
                f"document metadata is invalid: {field_name}",
                field_name=field_name,
                constraint=constraint,
                value=value,
            ) from exc
        ctx.passed("metadata_schema")

        filename = metadata.filename
        if len(filename) > limits.max_filename_length or not self._filename_re.match(filename):
            raise ctx.fail(
                "filename",
                "filename contains unsupported characters or is too long",
                field_name="filename",
                constraint=f"pattern {limits.filename_pattern}, max {limits.max_filename_length} chars",
                value=filename,
            )
        ctx.passed("filename")

        mime_type = metadata.mime_type
        if mime_type not in limits.allowed_mime_types:
            raise ctx.fail(
                "mime_type",
                f"MIME type {mime_type} is not accepted",
                field_name="mime_type",
                constraint="whitelist",
                value=mime_type,
            )
        ctx.passed("mime_type")

        if metadata.size_bytes > limits.max_file_size_bytes:
            raise ctx.fail(
                "file_size",
                "declared size exceeds limit",
                field_name="size_bytes",
                constraint=f"<= {limits.max_file_size_bytes}",
                value=metadata.size_bytes,
            )
        ctx.passed("file_size")

        current = now or datetime.now(timezone.utc)
        uploaded_at = metadata.uploaded_at
        if uploaded_at.tzinfo is None:
            uploaded_at = uploaded_at.replace(tzinfo=timezone.utc)
        if uploaded_at > current:
            raise ctx.fail(
                "upload_date",
                "upload date is in the future",
                field_name="uploaded_at",
                constraint="not_in_future",
                value=uploaded_at.isoformat(),
            )
        ctx.passed("upload_date")

        extension = posixpath.splitext(filename.lower())[1]
        allowed_extensions = EXTENSIONS_BY_MIME.get(mime_type)
        if allowed_extensions is not None and extension not in allowed_extensions:
            raise ctx.fail(
                "extension",
                f"extension {extension or '<none>'} does not match {mime_type}",
                field_name="filename",
                constraint="extension_matches_mime",
                value=filename,
            )
        ctx.passed("extension")

        content = document.content
        if not content:
            raise ctx.fail(
                "content_present",
                "document content is empty",
                field_name="content",
                constraint="non_empty",
                value=content,
            )
        ctx.passed("content_present")

        if len(content) > limits.max_file_size_bytes:
            raise ctx.fail(
                "content_size",
                "content exceeds size limit",
                field_name="content",
                constraint=f"<= {limits.max_file_size_bytes} bytes",
                value=content,
            )
        ctx.passed("content_size")

        self._check_signature(ctx, mime_type, content)
        ctx.passed("signature")
        return ctx

    def _check_signature(self, ctx: ValidationContext, mime_type: str, content: bytes) -> None:
        if mime_type.startswith("text/"):
            try:
                content.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ctx.fail(
                    "signature",
                    "text content is not valid UTF-8",
                    field_name="content",
                    constraint="utf-8",
                    value=content,
                ) from exc
            return
        signatures = MAGIC_BYTES.get(mime_type)
        if signatures and not any(content.startswith(signature) for signature in signatures):
            raise ctx.fail(
                "signature",
                f"content signature does not match {mime_type}",
                field_name="content",
                constraint="magic_bytes",
                value=content,
            )

    def validate_intermediate(
        self,
        document_id: str,
        stage: PipelineStage | str,
        result: Any,
        *,
        elapsed_ms: int,
    ) -> ValidationContext:
        stage_name = stage.value if isinstance(stage, PipelineStage) else str(stage)
        ctx = ValidationContext(stage=f"intermediate:{stage_name}")
        limits = self.thresholds

        payload = _as_mapping(result)
        if payload is None:
            raise ctx.fail(
                "structure",
                f"{stage_name} produced a non-object result",
                field_name="result",
                constraint="object",
                value=type(result).__name__,
            )
        required = REQUIRED_INTERMEDIATE_FIELDS.get(stage_name, ("document_id",))
        missing = [key for key in required if key not in payload]
        if missing:
            raise ctx.fail(
                "structure",
                f"{stage_name} result is missing {', '.join(missing)}",
                field_name=missing[0],
                constraint="required",
            )
        if payload.get("document_id") != document_id:
            raise ctx.fail(
                "structure",
                f"{stage_name} result belongs to another document",
                field_name="document_id",
                constraint="matches_run",
                value=payload.get("document_id"),
            )
        ctx.passed("structure")

        error_rate = float(payload.get("error_rate", 0.0) or 0.0)
        if error_rate > limits.max_error_rate:
            raise ctx.fail(
                "error_rate",
                f"{stage_name} error rate {error_rate:.4f} above threshold",
                field_name="error_rate",
                constraint=f"<= {limits.max_error_rate}",
                value=error_rate,
            )
        ctx.passed("error_rate")

        if elapsed_ms > limits.max_stage_time_ms:
            raise ctx.fail(
                "processing_time",
                f"{stage_name} took {elapsed_ms}ms",
                field_name="processing_time_ms",
                constraint=f"<= {limits.max_stage_time_ms}",
                value=elapsed_ms,
            )
        ctx.passed("processing_time")
        return ctx

    def validate_post_processing(
        self, result: Any, *, min_confidence: float | None = None
    ) -> ValidationContext:
        ctx = ValidationContext(stage="post_processing")
        threshold = self.thresholds.min_confidence if min_confidence is None else min_confidence

        payload = _as_mapping(result)
        if payload is None:
            raise ctx.fail(
                "schema",
                "final result is not an object",
                field_name="result",
                constraint="object",
                value=type(result).__name__,
            )
        try:
            parsed = _FinalResultSchema.model_validate(dict(payload))
        except PydanticValidationError as exc:
            field_name, constraint, value = _first_error(exc)
            raise ctx.fail(
                "schema",
                f"final result failed schema check at {field_name}",
                field_name=field_name,
                constraint=constraint,
                value=value,
            ) from exc
        if not parsed.text.strip():
            raise ctx.fail(
                "schema",
                "final result text is blank",
                field_name="text",
                constraint="non_empty",
                value=parsed.text,
            )
        ctx.passed("schema")

        if parsed.confidence < threshold:
            raise ctx.fail(
                "confidence",
                f"confidence {parsed.confidence:.3f} below minimum {threshold:.3f}",
                field_name="confidence",
                constraint=f">= {threshold}",
                value=parsed.confidence,
            )
        ctx.passed("confidence")

        seen: set[int] = set()
        for page in parsed.page_results:
            if page.page_number in seen:
                raise ctx.fail(
                    "uniqueness",
                    f"duplicate page number {page.page_number}",
                    field_name="page_results.page_number",
                    constraint="unique",
                    value=page.page_number,
                )
            seen.add(page.page_number)
        ctx.passed("uniqueness")
        return ctx


__all__ = ["ValidationContext", "ValidationGate", "EXTENSIONS_BY_MIME", "MAGIC_BYTES"]
