"""Persist document and scrape results to blob storage and the analytics sink."""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict

from docflow.models.document import DocumentMetadata, NLPResult, OCRResult, sha256_hex
from docflow.services.interfaces import BlobStore, FileRef, RowStore, UploadOptions


def build_result_payload(
    metadata: DocumentMetadata,
    ocr_result: OCRResult,
    nlp_result: NLPResult,
    *,
    trace_id: str,
) -> Dict[str, Any]:
    return {
        "document_id": metadata.document_id,
        "trace_id": trace_id,
        "filename": metadata.filename,
        "mime_type": metadata.mime_type,
        "checksum": metadata.checksum,
        "text": ocr_result.text,
        "confidence": ocr_result.confidence,
        "page_results": [asdict(page) for page in ocr_result.page_results],
        "entities": [asdict(entity) for entity in nlp_result.entities],
        "classifications": [asdict(item) for item in nlp_result.classifications],
        "nlp_confidence": nlp_result.confidence,
        "pii_detected": list(nlp_result.pii_detected),
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


class ResultRepository:
    """Stores the full result as JSON and a summary row for analytics.

    The blob write is idempotent (``if_not_exists``) and the row uses the
    document id as its insert id, so replaying PERSIST after a transient
    failure does not duplicate data.
    """

    def __init__(
        self,
        *,
        blob_store: BlobStore,
        row_store: RowStore,
        bucket: str,
        table: str,
        scrape_table: str = "scrape_results",
    ) -> None:
        self._blob_store = blob_store
        self._row_store = row_store
        self.bucket = bucket
        self.table = table
        self.scrape_table = scrape_table

    def result_path(self, document_id: str) -> str:
        return f"{document_id}/result.json"

    async def write_result(self, payload: Dict[str, Any]) -> FileRef:
        document_id = payload["document_id"]
        body = json.dumps(
            {k: v for k, v in payload.items() if k != "created_at"},
            separators=(",", ":"),
            sort_keys=True,
        ).encode("utf-8")
        ref = await self._blob_store.upload(
            self.bucket,
            self.result_path(document_id),
            body,
            UploadOptions(
                content_type="application/json",
                metadata={"trace_id": str(payload.get("trace_id", ""))},
                if_not_exists=True,
            ),
        )
        row = {
            "document_id": document_id,
            "trace_id": payload.get("trace_id"),
            "filename": payload.get("filename"),
            "mime_type": payload.get("mime_type"),
            "confidence": payload.get("confidence"),
            "nlp_confidence": payload.get("nlp_confidence"),
            "entity_count": len(payload.get("entities", [])),
            "pii_detected": ",".join(payload.get("pii_detected", [])),
            "result_uri": ref.uri,
            "created_at": payload.get("created_at"),
        }
        await self._row_store.insert(self.table, [row])
        return ref

    async def write_scrape_result(self, payload: Dict[str, Any]) -> FileRef:
        """Store the items collected by one website or API run.

        A re-run replaces the previous blob for the job; the summary row records
        every run with its checksum.
        """
        job_id = payload["job_id"]
        body = json.dumps(payload["pages"], separators=(",", ":"), sort_keys=True).encode("utf-8")
        checksum = sha256_hex(body)
        ref = await self._blob_store.upload(
            self.bucket,
            f"scrapes/{job_id}.json",
            body,
            UploadOptions(
                content_type="application/json",
                metadata={"source_url": str(payload.get("source_url", "")), "checksum": checksum},
            ),
        )
        row = {
            "job_id": job_id,
            "source_type": payload.get("source_type"),
            "source_url": payload.get("source_url"),
            "page_count": len(payload["pages"]),
            "item_count": payload.get("item_count", 0),
            "checksum": checksum,
            "result_uri": ref.uri,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        await self._row_store.insert(self.scrape_table, [row])
        return ref


__all__ = ["ResultRepository", "build_result_payload"]
