"""
Document routes: the document register and read receipts.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response

from ..config.models import Settings
from ..database import Database
from ..query import Statement, parse_date_filter, pagination_meta, register_select
from .cleaning import clean_object
from .dependencies import get_db, get_settings, require_bearer_token
from .errors import DatabaseQueryError, database_errors
from .responses import NegotiatedResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["Documents"])

LAST_MODIFIED_PATTERN = re.compile(
    r"^(?:eq|gt|lt|ge|le)?\d{4}-\d{2}-\d{2}"
    r"(?:T\d{2}:\d{2}(?::\d{2}(?:\.\d{3}(?:\d{3})?)?)?)?$"
)

DOCUMENT_ID = Path(..., pattern=r"^[\w-]+$", max_length=64)


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail=message)


def parse_last_modified(values: List[str]):
    filters = []
    for raw in values:
        if not LAST_MODIFIED_PATTERN.match(raw):
            raise _bad_request(
                "querystring/lastModified must be a date or date-time, optionally "
                "prefixed with one of eq, gt, lt, ge, le"
            )
        f = parse_date_filter(raw)
        try:
            datetime.fromisoformat(f.value)
        except ValueError:
            raise _bad_request(f"querystring/lastModified {raw!r} is not a valid date") from None
        filters.append(f)
    return filters


@router.get(
    "/register",
    summary="List documents",
    dependencies=[
        Depends(require_bearer_token("documents/register", "documents/register:get"))
    ],
)
async def get_register(
    request: Request,
    last_modified: List[str] = Query(..., alias="lastModified"),
    page: int = Query(1, ge=1),
    per_page: int = Query(1, ge=1, alias="perPage"),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Return document register rows filtered on their modification time."""
    filters = parse_last_modified(last_modified)
    query = register_select(
        table=settings.database.tables.document_register,
        filters=filters,
        page=page - 1,
        per_page=per_page,
        dialect=settings.database.client,
    )
    async with database_errors("reading document register"):
        raw = await db.query(query.statements)
    result = db.adapter.to_page(raw)

    return NegotiatedResponse(
        {
            "data": clean_object(result.rows),
            "meta": {"pagination": pagination_meta(result.total, page, per_page)},
        },
        request=request,
    )


@router.put(
    "/receipt/{id}",
    summary="Create document read receipt",
    status_code=204,
    dependencies=[
        Depends(require_bearer_token("documents/receipt", "documents/receipt:put"))
    ],
)
async def put_receipt(
    id: str = DOCUMENT_ID,
    patient_id: str = Query(..., alias="patientId", min_length=1, max_length=64),
    timestamp: datetime = Query(...),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    table = settings.database.tables.read_receipt
    params = {"guid": id, "patient_id": patient_id, "ts": timestamp}
    statements = [
        Statement(
            sql=f"DELETE FROM {table} WHERE guid = :guid AND patient_id = :patient_id",
            params=params,
        ),
        Statement(
            sql=f"INSERT INTO {table} (guid, patient_id, ts) VALUES (:guid, :patient_id, :ts)",
            params=params,
        ),
    ]
    async with database_errors("creating read receipt"):
        raw = await db.query(statements)
    if db.adapter.rows_affected(raw, 1) < 1:
        logger.error("Read receipt insert for %s affected no rows", id)
        raise DatabaseQueryError()
    return Response(status_code=204)


@router.delete(
    "/receipt/{id}",
    summary="Delete document read receipt",
    status_code=204,
    dependencies=[
        Depends(require_bearer_token("documents/receipt", "documents/receipt:delete"))
    ],
)
async def delete_receipt(
    id: str = DOCUMENT_ID,
    patient_id: str = Query(..., alias="patientId", min_length=1, max_length=64),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    table = settings.database.tables.read_receipt
    statement = Statement(
        sql=f"DELETE FROM {table} WHERE guid = :guid AND patient_id = :patient_id",
        params={"guid": id, "patient_id": patient_id},
    )
    async with database_errors("deleting read receipt"):
        raw = await db.query([statement])
    if db.adapter.rows_affected(raw, 0) < 1:
        raise HTTPException(
            status_code=404, detail="Record does not exist or has already been deleted"
        )
    return Response(status_code=204)
