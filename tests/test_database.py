from datetime import datetime, timedelta, timezone
from urllib.parse import quote_plus

import pytest

from myydh.config.models import DatabaseSettings
from myydh.database import (
    Database,
    RecordsetsAdapter,
    RowsAdapter,
    StatementResult,
    build_database_url,
    get_result_adapter,
    utcnow,
)

RESULTS = [
    StatementResult(rows=[{"total": 2}], rowcount=1),
    StatementResult(rows=[{"id": "a"}, {"id": "b"}], rowcount=2),
]


def _db_settings(client, connection):
    return DatabaseSettings.model_validate(
        {
            "client": client,
            "connection": connection,
            "tables": {
                "document_register": "d",
                "patient_pref": "p",
                "patient_pref_type_lookup": "pt",
                "patient_pref_value_lookup": "pv",
                "read_receipt": "r",
            },
        }
    )


def test_recordsets_shape():
    raw = RecordsetsAdapter().package(RESULTS)
    assert raw == {
        "recordsets": [[{"total": 2}], [{"id": "a"}, {"id": "b"}]],
        "rowsAffected": [1, 2],
    }


def test_rows_shape():
    raw = RowsAdapter().package(RESULTS)
    assert raw == [
        {"rows": [{"total": 2}], "rowCount": 1},
        {"rows": [{"id": "a"}, {"id": "b"}], "rowCount": 2},
    ]


@pytest.mark.parametrize("adapter", [RecordsetsAdapter(), RowsAdapter()])
def test_adapters_read_either_shape(adapter):
    for raw in (RecordsetsAdapter().package(RESULTS), RowsAdapter().package(RESULTS)):
        page = adapter.to_page(raw)
        assert page.total == 2
        assert [r["id"] for r in page.rows] == ["a", "b"]
        assert adapter.rows_affected(raw, 1) == 2
        assert adapter.rows(raw, 5) == []
        assert adapter.rows_affected(raw, 5) == 0


def test_empty_count_is_zero():
    page = RecordsetsAdapter().to_page({"recordsets": [[], []], "rowsAffected": [0, 0]})
    assert page.total == 0
    assert page.rows == []


def test_get_result_adapter():
    assert isinstance(get_result_adapter("mssql"), RecordsetsAdapter)
    assert isinstance(get_result_adapter("postgresql"), RowsAdapter)
    with pytest.raises(ValueError):
        get_result_adapter("sqlite")


def test_database_url_postgresql():
    url = build_database_url(_db_settings("postgresql", "postgresql://u:p@db:5432/myydh"))
    assert url == "postgresql+asyncpg://u:p@db:5432/myydh"
    url = build_database_url(_db_settings("postgresql", "postgres://u:p@db/myydh"))
    assert url == "postgresql+asyncpg://u:p@db/myydh"


def test_database_url_mssql():
    assert (
        build_database_url(_db_settings("mssql", "mssql://u:p@db/myydh"))
        == "mssql+aioodbc://u:p@db/myydh"
    )
    odbc = "Driver={ODBC Driver 18 for SQL Server};Server=db;Database=myydh"
    assert build_database_url(_db_settings("mssql", odbc)) == (
        "mssql+aioodbc:///?odbc_connect=" + quote_plus(odbc)
    )


@pytest.mark.asyncio
async def test_query_without_engine_fails():
    db = Database(None, "mssql")
    with pytest.raises(RuntimeError):
        await db.query([])
    # closing an unconfigured database is a no-op
    await db.close()


@pytest.mark.asyncio
async def test_transaction_without_engine_fails():
    db = Database(None, "postgresql")
    with pytest.raises(RuntimeError):
        async with db.transaction():
            pass


def test_utcnow_is_naive_utc():
    now = utcnow()
    assert now.tzinfo is None
    aware = datetime.now(timezone.utc).replace(tzinfo=None)
    assert abs(aware - now) < timedelta(seconds=5)
