"""
Admin API endpoints.

- ``/admin/healthcheck``: unauthenticated liveness check
- ``/admin/access/bearer-token``: bearer token management (basic auth)
- ``/admin/metrics``: Prometheus exposition (basic auth)
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response
from fastapi.responses import PlainTextResponse

from ..config.models import Settings
from ..database import Database, utcnow
from ..identity.auth import TOKEN_COLUMNS, generate_token, hash_token
from ..identity.models import BearerToken
from ..monitoring.metrics import metrics_response
from ..query import Statement, build_page_query, pagination_meta
from .cleaning import clean_object
from .dependencies import get_db, get_settings, require_acceptable
from .errors import database_errors
from .models import BearerTokenCreateRequest
from .responses import NegotiatedResponse

logger = logging.getLogger(__name__)

health_router = APIRouter(prefix="/admin", tags=["System Administration"])

access_router = APIRouter(prefix="/admin/access", tags=["System Administration"])

metrics_router = APIRouter(prefix="/admin", tags=["System Administration"])

TOKEN_ID = Path(..., pattern=r"^[\w-]+$", max_length=36)

# Columns returned to admins; the hash never leaves the database layer
PUBLIC_TOKEN_COLUMNS = "id, name, email, scopes, expires, created, last_updated"

TOKEN_NOT_FOUND = "Bearer token not found"


@health_router.get(
    "/healthcheck",
    summary="Ping",
    response_class=PlainTextResponse,
    dependencies=[Depends(require_acceptable("text/plain"))],
)
async def healthcheck():
    return PlainTextResponse("ok")


def _token_body(row: Dict[str, Any]) -> Dict[str, Any]:
    return clean_object(BearerToken.from_row(row).public_dict())


@access_router.get("/bearer-token", summary="List bearer tokens")
async def list_bearer_tokens(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(1, ge=1, alias="perPage"),
    name: Optional[str] = Query(None, min_length=1, max_length=255),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    where, params = "1 = 1", {}
    if name:
        where, params = "name LIKE :name", {"name": f"%{name}%"}
    query = build_page_query(
        table=settings.database.tables.bearer_token,
        where=where,
        params=params,
        page=page - 1,
        per_page=per_page,
        dialect=settings.database.client,
        order_by="created DESC",
        columns=PUBLIC_TOKEN_COLUMNS,
    )
    async with database_errors("listing bearer tokens"):
        raw = await db.query(query.statements)
    result = db.adapter.to_page(raw)
    return NegotiatedResponse(
        {
            "data": [_token_body(r) for r in result.rows],
            "meta": {"pagination": pagination_meta(result.total, page, per_page)},
        },
        request=request,
    )


@access_router.get("/bearer-token/{id}", summary="Get bearer token")
async def get_bearer_token(
    request: Request,
    id: str = TOKEN_ID,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    statement = Statement(
        sql=(
            f"SELECT {PUBLIC_TOKEN_COLUMNS} FROM {settings.database.tables.bearer_token} "
            "WHERE id = :id"
        ),
        params={"id": id},
    )
    async with database_errors("reading bearer token"):
        raw = await db.query([statement])
    rows = db.adapter.rows(raw, 0)
    if not rows:
        raise HTTPException(status_code=404, detail=TOKEN_NOT_FOUND)
    return NegotiatedResponse(_token_body(rows[0]), request=request)


@access_router.post("/bearer-token", summary="Create bearer token", status_code=201)
async def create_bearer_token(
    request: Request,
    payload: BearerTokenCreateRequest,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Create a token; the plaintext secret is only ever returned here."""
    token = generate_token()
    now = utcnow()
    row = {
        "id": str(uuid.uuid4()),
        "name": payload.name,
        "email": payload.email,
        "hash": hash_token(token),
        "scopes": json.dumps(payload.scopes),
        "expires": payload.expires,
        "created": now,
        "last_updated": now,
    }
    statement = Statement(
        sql=(
            f"INSERT INTO {settings.database.tables.bearer_token} ({TOKEN_COLUMNS}) "
            "VALUES (:id, :name, :email, :hash, :scopes, :expires, :created, :last_updated)"
        ),
        params=row,
    )
    async with database_errors("creating bearer token"):
        await db.query([statement])
    logger.info("Bearer token %s created with scopes %s", payload.name, payload.scopes)

    body = _token_body(row)
    body["access_token"] = token
    return NegotiatedResponse(body, request=request, status_code=201)


@access_router.delete("/bearer-token/{id}", summary="Delete bearer token", status_code=204)
async def delete_bearer_token(
    id: str = TOKEN_ID,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    statement = Statement(
        sql=f"DELETE FROM {settings.database.tables.bearer_token} WHERE id = :id",
        params={"id": id},
    )
    async with database_errors("deleting bearer token"):
        raw = await db.query([statement])
    if db.adapter.rows_affected(raw, 0) < 1:
        raise HTTPException(status_code=404, detail=TOKEN_NOT_FOUND)
    logger.info("Bearer token %s deleted", id)
    return Response(status_code=204)


@metrics_router.get("/metrics", include_in_schema=False)
async def get_metrics():
    return metrics_response()
