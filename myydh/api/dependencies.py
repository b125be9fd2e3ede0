from __future__ import annotations

import logging
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from ..config.models import Settings
from ..database import Database
from ..identity.auth import BasicAuthGate, BearerTokenAuthenticator
from ..identity.models import BearerToken
from .responses import SERIALIZED_MEDIA_TYPES, negotiate

logger = logging.getLogger(__name__)

_basic = HTTPBasic(auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def require_acceptable(*media_types: str) -> Callable:
    """Reject requests whose Accept header allows none of ``media_types``.

    Runs before auth and handler code so unsupported requests never reach
    the database.
    """
    offered = media_types or SERIALIZED_MEDIA_TYPES

    async def _dep(request: Request) -> str:
        chosen = negotiate(request.headers.get("accept"), offered)
        if chosen is None:
            raise HTTPException(status_code=406, detail="Not Acceptable")
        return chosen

    return _dep


def require_bearer_token(route_key: str, scope: str) -> Callable:
    """Enforce bearer auth with ``scope`` when enabled for ``route_key``."""

    async def _dep(request: Request) -> Optional[BearerToken]:
        settings: Settings = request.app.state.settings
        if not settings.bearer_auth_required(route_key):
            return None
        authenticator: BearerTokenAuthenticator = request.app.state.bearer_authenticator
        token = await authenticator.authenticate(
            request.headers.get("authorization"), scope
        )
        request.state.bearer_token = token
        logger.info("Bearer token %s authorised for %s", token.name, scope)
        return token

    return _dep


async def require_admin(
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(_basic),
) -> str:
    gate: BasicAuthGate = request.app.state.basic_auth_gate
    return gate.verify(credentials)


__all__ = [
    "get_db",
    "get_settings",
    "require_acceptable",
    "require_admin",
    "require_bearer_token",
]
