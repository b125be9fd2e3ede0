"""
Authentication for the API.

Two schemes are supported:

- Bearer tokens: opaque secrets whose bcrypt hashes (and scopes) live in
  the bearer token table. Every active token hash is compared against the
  presented secret; the first match wins and must carry the route's scope.
- Basic auth: a single administrator credential taken from settings,
  protecting the ``/admin`` route group.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import List, Optional

import bcrypt
from fastapi import HTTPException
from fastapi.security import HTTPBasicCredentials

from ..config.models import AdminSettings
from ..database import Database, utcnow
from ..query import Statement
from .models import BearerToken

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "ydh_"
TOKEN_COLUMNS = "id, name, email, hash, scopes, expires, created, last_updated"

BASIC_AUTH_FAILURE = "Invalid username or password"


def generate_token() -> str:
    return TOKEN_PREFIX + secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    return bcrypt.hashpw(token.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_token_hash(token: str, token_hash: str) -> bool:
    try:
        return bcrypt.checkpw(token.encode("utf-8"), token_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash, never a match
        logger.warning("Skipping bearer token with malformed hash")
        return False


def parse_bearer_header(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(
            status_code=401,
            detail="Missing or bad formatted authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise HTTPException(
            status_code=401,
            detail="Missing or bad formatted authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token


class BearerTokenAuthenticator:
    """Validates bearer tokens against hashed tokens stored in the database."""

    def __init__(self, db: Database, table: str):
        self.db = db
        self.table = table

    def active_tokens_statement(self, now: Optional[datetime] = None) -> Statement:
        return Statement(
            sql=(
                f"SELECT {TOKEN_COLUMNS} FROM {self.table} "
                "WHERE expires IS NULL OR expires > :now"
            ),
            params={"now": now or utcnow()},
        )

    async def fetch_active_tokens(self) -> List[BearerToken]:
        raw = await self.db.query([self.active_tokens_statement()])
        return [BearerToken.from_row(r) for r in self.db.adapter.rows(raw, 0)]

    def match(self, token: str, candidates: List[BearerToken]) -> Optional[BearerToken]:
        for candidate in candidates:
            if candidate.hash and verify_token_hash(token, candidate.hash):
                return candidate
        return None

    async def authenticate(
        self, authorization: Optional[str], required_scope: Optional[str]
    ) -> BearerToken:
        token = parse_bearer_header(authorization)
        matched = self.match(token, await self.fetch_active_tokens())
        if matched is None:
            raise HTTPException(
                status_code=401,
                detail="Invalid bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if required_scope and not matched.has_scope(required_scope):
            logger.info(
                "Bearer token %s lacks scope %s", matched.name, required_scope
            )
            raise HTTPException(
                status_code=403, detail="Bearer token does not grant access to this route"
            )
        return matched


class BasicAuthGate:
    """Checks basic auth credentials against the configured administrator."""

    def __init__(self, admin: AdminSettings):
        self._username = admin.username.encode("utf-8")
        self._password = admin.password.encode("utf-8")

    def verify(self, credentials: Optional[HTTPBasicCredentials]) -> str:
        if credentials is None:
            raise self._unauthorized()
        # both comparisons always run
        user_ok = secrets.compare_digest(
            credentials.username.encode("utf-8"), self._username
        )
        pass_ok = secrets.compare_digest(
            credentials.password.encode("utf-8"), self._password
        )
        if not (user_ok and pass_ok):
            raise self._unauthorized()
        return credentials.username

    @staticmethod
    def _unauthorized() -> HTTPException:
        return HTTPException(
            status_code=401,
            detail=BASIC_AUTH_FAILURE,
            headers={"WWW-Authenticate": "Basic"},
        )
