"""Split document payloads into OCR work units without breaking encodings.

Plain text is cut every ``chunk_size_bytes`` but each cut is moved back to a
UTF-8 code point boundary. PDFs are cut along page ranges using pypdf so each
chunk is itself a valid PDF. Other binary formats (images, docx) cannot be cut
safely and are returned as a single chunk.
"""

from __future__ import annotations

import io

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from docflow.errors import ValidationError
from docflow.models.document import Chunk

PDF_MIME = "application/pdf"


def _is_continuation_byte(value: int) -> bool:
    return (value & 0xC0) == 0x80


def split_utf8(data: bytes, chunk_size: int) -> list[bytes]:
    """Split ``data`` into pieces of at most ``chunk_size`` bytes on code point boundaries.

    A piece may exceed ``chunk_size`` only when a single code point is longer
    than the limit.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    pieces: list[bytes] = []
    start = 0
    total = len(data)
    while start < total:
        end = min(start + chunk_size, total)
        if end < total:
            boundary = end
            while boundary > start and _is_continuation_byte(data[boundary]):
                boundary -= 1
            if boundary == start:
                boundary = end
                while boundary < total and _is_continuation_byte(data[boundary]):
                    boundary += 1
            end = boundary
        pieces.append(data[start:end])
        start = end
    return pieces


class PayloadChunker:
    def __init__(self, *, chunk_size_bytes: int = 1024 * 1024, pdf_pages_per_chunk: int = 10) -> None:
        if chunk_size_bytes <= 0:
            raise ValueError("chunk_size_bytes must be positive")
        if pdf_pages_per_chunk <= 0:
            raise ValueError("pdf_pages_per_chunk must be positive")
        self.chunk_size_bytes = chunk_size_bytes
        self.pdf_pages_per_chunk = pdf_pages_per_chunk

    def split(self, data: bytes, mime_type: str) -> list[Chunk]:
        if not data:
            raise ValueError("cannot chunk an empty payload")
        if mime_type.startswith("text/"):
            return [
                Chunk(index=index, data=piece, mime_type=mime_type)
                for index, piece in enumerate(split_utf8(data, self.chunk_size_bytes))
            ]
        if mime_type == PDF_MIME:
            return self._split_pdf(data)
        return [Chunk(index=0, data=data, mime_type=mime_type)]

    def _split_pdf(self, data: bytes) -> list[Chunk]:
        try:
            reader = PdfReader(io.BytesIO(data))
            page_count = len(reader.pages)
        except PdfReadError as exc:
            raise ValidationError(
                "PDF payload could not be parsed",
                field="content",
                constraint="pdf_structure",
                value=f"<{len(data)} bytes>",
            ) from exc
        if page_count <= self.pdf_pages_per_chunk:
            return [Chunk(index=0, data=data, mime_type=PDF_MIME, page_start=1, page_end=max(page_count, 1))]
        chunks: list[Chunk] = []
        for index, start in enumerate(range(0, page_count, self.pdf_pages_per_chunk)):
            end = min(start + self.pdf_pages_per_chunk, page_count)
            writer = PdfWriter()
            for page_index in range(start, end):
                writer.add_page(reader.pages[page_index])
            buffer = io.BytesIO()
            writer.write(buffer)
            chunks.append(
                Chunk(
                    index=index,
                    data=buffer.getvalue(),
                    mime_type=PDF_MIME,
                    page_start=start + 1,
                    page_end=end,
                )
            )
        return chunks


__all__ = ["PayloadChunker", "split_utf8"]
