"""
Database utilities: async SQLAlchemy engine, query execution and result adapters.

The two supported backends report results in different shapes, mirroring
their native drivers:

- mssql: ``{"recordsets": [[row, ...], ...], "rowsAffected": [n, ...]}``
- postgresql: ``[{"rows": [row, ...], "rowCount": n}, ...]``

Route handlers never look at these directly; they go through a
``ResultAdapter`` selected from settings at startup.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence
from urllib.parse import quote_plus

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from .config.models import DatabaseSettings
from .query import Statement

logger = logging.getLogger(__name__)


@dataclass
class PageResult:
    total: int
    rows: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class StatementResult:
    rows: List[Dict[str, Any]]
    rowcount: int


class ResultAdapter:
    """Normalises a backend's raw query result."""

    def package(self, results: Sequence[StatementResult]) -> Any:  # pragma: no cover - interface
        raise NotImplementedError

    def rows(self, raw: Any, index: int = 0) -> List[Dict[str, Any]]:
        return _rows_any(raw, index)

    def rows_affected(self, raw: Any, index: int = 0) -> int:
        return _rows_affected_any(raw, index)

    def to_page(self, raw: Any, count_index: int = 0, rows_index: int = 1) -> PageResult:
        count_rows = self.rows(raw, count_index)
        total = 0
        if count_rows:
            total = int(count_rows[0].get("total") or 0)
        return PageResult(total=total, rows=self.rows(raw, rows_index))


class RecordsetsAdapter(ResultAdapter):
    """SQL Server shape: one ``recordsets`` list for the whole batch."""

    def package(self, results: Sequence[StatementResult]) -> Dict[str, Any]:
        return {
            "recordsets": [r.rows for r in results],
            "rowsAffected": [r.rowcount for r in results],
        }


class RowsAdapter(ResultAdapter):
    """PostgreSQL shape: one ``{"rows": ...}`` object per statement."""

    def package(self, results: Sequence[StatementResult]) -> List[Dict[str, Any]]:
        return [{"rows": r.rows, "rowCount": r.rowcount} for r in results]


def _rows_any(raw: Any, index: int) -> List[Dict[str, Any]]:
    # Either shape is accepted regardless of the configured backend
    if isinstance(raw, dict):
        recordsets = raw.get("recordsets") or []
        if index < len(recordsets) and recordsets[index] is not None:
            return list(recordsets[index])
        return []
    if isinstance(raw, list) and index < len(raw) and isinstance(raw[index], dict):
        return list(raw[index].get("rows") or [])
    return []


def _rows_affected_any(raw: Any, index: int) -> int:
    if isinstance(raw, dict):
        affected = raw.get("rowsAffected") or []
        return int(affected[index]) if index < len(affected) else 0
    if isinstance(raw, list) and index < len(raw) and isinstance(raw[index], dict):
        return int(raw[index].get("rowCount") or 0)
    return 0


def get_result_adapter(client: str) -> ResultAdapter:
    if client == "mssql":
        return RecordsetsAdapter()
    if client == "postgresql":
        return RowsAdapter()
    raise ValueError(f"unsupported database client: {client!r}")


def build_database_url(settings: DatabaseSettings) -> str:
    """Turn the configured connection string into an async SQLAlchemy URL.

    SQLAlchemy URLs are used as-is apart from selecting the async driver;
    SQL Server ODBC connection strings are wrapped for aioodbc.
    """
    conn = settings.connection.strip()
    if settings.client == "postgresql":
        for prefix in ("postgresql://", "postgres://"):
            if conn.startswith(prefix):
                return "postgresql+asyncpg://" + conn[len(prefix):]
        return conn
    if conn.startswith("mssql://"):
        return "mssql+aioodbc://" + conn[len("mssql://"):]
    if "://" in conn:
        return conn
    return "mssql+aioodbc:///?odbc_connect=" + quote_plus(conn)


class Transaction:
    """Statements run on one connection inside an open transaction."""

    def __init__(self, conn: AsyncConnection, adapter: ResultAdapter):
        self.conn = conn
        self.adapter = adapter

    async def query(self, statements: Sequence[Statement]) -> Any:
        results: List[StatementResult] = []
        for stmt in statements:
            res = await self.conn.execute(text(stmt.sql), stmt.params)
            rows: List[Dict[str, Any]] = []
            if res.returns_rows:
                rows = [dict(r) for r in res.mappings().all()]
            results.append(StatementResult(rows=rows, rowcount=res.rowcount))
        return self.adapter.package(results)


class Database:
    """Executes statements on the configured engine.

    All statements passed to one ``query`` call run in a single
    transaction; a failure rolls the whole batch back.
    """

    def __init__(self, engine: Optional[AsyncEngine], client: str):
        self.engine = engine
        self.client = client
        self.adapter = get_result_adapter(client)

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "Database":
        engine = create_async_engine(
            build_database_url(settings), future=True, echo=False, pool_pre_ping=True
        )
        return cls(engine, settings.client)

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator["Transaction"]:
        """Open a transaction for several dependent ``query`` calls.

        Commits when the block exits normally, rolls back on error.
        """
        if self.engine is None:
            raise RuntimeError("Database engine not configured")
        async with self.engine.begin() as conn:
            yield Transaction(conn, self.adapter)

    async def query(self, statements: Sequence[Statement]) -> Any:
        """Run ``statements`` and return the backend's raw result shape."""
        async with self.transaction() as tx:
            return await tx.query(statements)

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database connections closed")


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the timestamp columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
