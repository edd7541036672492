"""Analytics row sink adapters (BigQuery and in-memory)."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable, Dict, Mapping, Sequence

from google.cloud import bigquery

from docflow.errors import DocflowError
from docflow.services.interfaces import RowStore

LOG = logging.getLogger("docflow.row_store")


class RowInsertError(DocflowError):
    code = "ROW_INSERT_FAILED"
    public_message = "Failed to record analytics rows"

    def __init__(self, table: str, errors: Sequence[Any]) -> None:
        super().__init__(f"failed to insert rows into {table}: {list(errors)[:3]}")
        self.errors = list(errors)


def _query_parameter(name: str, value: Any) -> bigquery.ScalarQueryParameter:
    if isinstance(value, bool):
        kind = "BOOL"
    elif isinstance(value, int):
        kind = "INT64"
    elif isinstance(value, float):
        kind = "FLOAT64"
    else:
        kind = "STRING"
        value = None if value is None else str(value)
    return bigquery.ScalarQueryParameter(name, kind, value)


class BigQueryRowStore(RowStore):
    """Streams rows with ``insert_rows_json`` and runs parameterised queries."""

    def __init__(
        self,
        *,
        client: Any | None = None,
        row_id_field: str | None = "document_id",
    ) -> None:
        self._client = client or bigquery.Client()
        self._row_id_field = row_id_field

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
        if not rows:
            return
        await asyncio.to_thread(self._insert_sync, table, [dict(row) for row in rows])

    def _insert_sync(self, table: str, rows: list[dict[str, Any]]) -> None:
        row_ids = None
        if self._row_id_field and all(row.get(self._row_id_field) for row in rows):
            row_ids = [str(row[self._row_id_field]) for row in rows]
        errors = self._client.insert_rows_json(table, rows, row_ids=row_ids)
        if errors:
            raise RowInsertError(table, errors)
        LOG.info("rows_inserted", extra={"table": table, "row_count": len(rows)})

    async def query(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._query_sync, sql, dict(params or {}))

    def _query_sync(self, sql: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        job_config = bigquery.QueryJobConfig(
            query_parameters=[_query_parameter(name, value) for name, value in params.items()]
        )
        result = self._client.query(sql, job_config=job_config).result()
        return [dict(row.items()) for row in result]


_SIMPLE_SELECT = re.compile(
    r"^\s*SELECT\s+\*\s+FROM\s+`?(?P<table>[\w.\-]+)`?"
    r"(?:\s+WHERE\s+(?P<column>\w+)\s*=\s*@(?P<param>\w+))?\s*$",
    re.IGNORECASE,
)


class InMemoryRowStore(RowStore):
    """Keeps rows per table; ``query`` understands ``SELECT * FROM t [WHERE c = @p]``."""

    def __init__(self) -> None:
        self.tables: Dict[str, list[dict[str, Any]]] = {}
        self.fail_with: Callable[[], Exception] | None = None

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
        if self.fail_with is not None:
            raise self.fail_with()
        self.tables.setdefault(table, []).extend(dict(row) for row in rows)

    async def query(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        match = _SIMPLE_SELECT.match(sql)
        if match is None:
            raise ValueError(f"unsupported query for in-memory row store: {sql}")
        rows = self.tables.get(match.group("table"), [])
        column = match.group("column")
        if column is None:
            return [dict(row) for row in rows]
        expected = (params or {}).get(match.group("param"))
        return [dict(row) for row in rows if row.get(column) == expected]


__all__ = ["BigQueryRowStore", "InMemoryRowStore", "RowInsertError"]
