"""
Patient contact preference routes.

Preference types (SMS, Email, Phone, Letters) and their yes/no options are
lookup tables; a patient's choices live in the patient preference table,
one row per preference type.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from fastapi import APIRouter, Depends, HTTPException, Path, Request, Response

from ..config.models import Settings
from ..database import Database, utcnow
from ..query import Statement, advisory_lock
from .cleaning import clean_object
from .dependencies import get_db, get_settings, require_bearer_token
from .errors import database_errors
from .models import UserPreferencesUpdate
from .responses import NegotiatedResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/preferences", tags=["Contact Preferences"])

# Option value preselected when a patient has not chosen one ("yes")
DEFAULT_SELECTED = 1

PATIENT_ID = Path(..., pattern=r"^[\w-]+$", max_length=64)

NOT_FOUND = "Invalid or expired search results"


def catalog_statements(settings: Settings) -> List[Statement]:
    tables = settings.database.tables
    return [
        Statement(
            sql=(
                "SELECT preference_type_id AS id, preference_type AS display, "
                f"preference_priority AS priority FROM {tables.patient_pref_type_lookup}"
            )
        ),
        Statement(
            sql=(
                "SELECT preference_value_id AS value, preference_value AS display "
                f"FROM {tables.patient_pref_value_lookup}"
            )
        ),
    ]


def build_preferences(
    types: List[Dict[str, Any]],
    options: List[Dict[str, Any]],
    chosen: Optional[Dict[int, Dict[str, Any]]] = None,
) -> List[Dict[str, Any]]:
    """Combine lookup rows (and optionally a patient's choices) into the response list."""
    chosen = chosen or {}
    option_list = [
        {"display": o.get("display"), "value": o.get("value")}
        for o in sorted(options, key=lambda o: o.get("value") or 0)
    ]
    preferences = []
    for t in types:
        own = chosen.get(t.get("id"), {})
        priority = own.get("priority", t.get("priority"))
        preferences.append(
            {
                "type": {
                    "display": t.get("display"),
                    "id": t.get("id"),
                    "priority": priority,
                    "selected": own.get("selected", DEFAULT_SELECTED),
                    "options": list(option_list),
                }
            }
        )
    preferences.sort(key=lambda p: _priority_key(p["type"]["priority"]))
    return preferences


def _priority_key(priority: Any):
    return (priority is None, priority if priority is not None else 0)


@router.get(
    "/options",
    summary="List preference options",
    dependencies=[
        Depends(require_bearer_token("preferences/options", "preferences/options:get"))
    ],
)
async def get_options(
    request: Request,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Return the default list of patient contact preferences that can be set."""
    async with database_errors("reading preference options"):
        raw = await db.query(catalog_statements(settings))
    types = db.adapter.rows(raw, 0)
    if not types:
        raise HTTPException(status_code=404, detail=NOT_FOUND)
    preferences = build_preferences(types, db.adapter.rows(raw, 1))
    return NegotiatedResponse(clean_object({"preferences": preferences}), request=request)


@router.get(
    "/user/{id}",
    summary="Get patient contact preferences",
    dependencies=[
        Depends(require_bearer_token("preferences/user", "preferences/user:get"))
    ],
)
async def get_user_preferences(
    request: Request,
    id: str = PATIENT_ID,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    table = settings.database.tables.patient_pref
    statements = catalog_statements(settings) + [
        Statement(
            sql=(
                "SELECT preference_type_id AS id, preference_value_id AS selected, "
                "preference_priority AS priority, created, last_updated "
                f"FROM {table} WHERE patient_id = :patient_id"
            ),
            params={"patient_id": id},
        )
    ]
    async with database_errors("reading patient preferences"):
        raw = await db.query(statements)

    own_rows = db.adapter.rows(raw, 2)
    if not own_rows:
        raise HTTPException(status_code=404, detail=NOT_FOUND)

    chosen = {r.get("id"): r for r in own_rows}
    created = [r["created"] for r in own_rows if r.get("created") is not None]
    updated = [r["last_updated"] for r in own_rows if r.get("last_updated") is not None]
    body = {
        "id": id,
        "meta": {
            "created": min(created) if created else None,
            "lastupdated": max(updated) if updated else None,
        },
        "preferences": build_preferences(
            db.adapter.rows(raw, 0), db.adapter.rows(raw, 1), chosen
        ),
    }
    return NegotiatedResponse(clean_object(body), request=request)


@router.put(
    "/user/{id}",
    summary="Update patient contact preferences",
    status_code=204,
    dependencies=[
        Depends(require_bearer_token("preferences/user", "preferences/user:put"))
    ],
)
async def put_user_preferences(
    payload: UserPreferencesUpdate,
    id: str = PATIENT_ID,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Create or replace a patient's preferences.

    Existing rows keep their ``created`` timestamp. The read and the writes
    share one transaction, serialized per patient.
    """
    table = settings.database.tables.patient_pref
    existing_stmt = Statement(
        sql=f"SELECT preference_type_id AS id FROM {table} WHERE patient_id = :patient_id",
        params={"patient_id": id},
    )
    async with database_errors("updating patient preferences"):
        async with db.transaction() as tx:
            # concurrent writers for one patient queue here until commit
            lock = advisory_lock(settings.database.client, f"{table}:{id}")
            raw = await tx.query([lock, existing_stmt])
            existing = {r.get("id") for r in db.adapter.rows(raw, 1)}
            await tx.query(_preference_writes(table, id, payload, existing, utcnow()))
    logger.info("Updated %d preference(s) for patient", len(payload.preferences))
    return Response(status_code=204)


def _preference_writes(
    table: str,
    patient_id: str,
    payload: UserPreferencesUpdate,
    existing: Set[Any],
    now: datetime,
) -> List[Statement]:
    """UPDATE for preference types the patient already has, INSERT for the rest."""
    statements: List[Statement] = []
    for pref in payload.preferences:
        params = {
            "patient_id": patient_id,
            "type_id": pref.type.id,
            "value_id": pref.type.selected,
            "priority": pref.type.priority,
            "now": now,
        }
        if pref.type.id in existing:
            sql = (
                f"UPDATE {table} SET preference_value_id = :value_id, "
                "preference_priority = :priority, last_updated = :now "
                "WHERE patient_id = :patient_id AND preference_type_id = :type_id"
            )
        else:
            sql = (
                f"INSERT INTO {table} (patient_id, preference_type_id, "
                "preference_value_id, preference_priority, created, last_updated) "
                "VALUES (:patient_id, :type_id, :value_id, :priority, :now, :now)"
            )
        statements.append(Statement(sql=sql, params=params))
    return statements
