from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional


def parse_scopes(value: Any) -> List[str]:
    """Scopes are stored as a JSON array string; drivers may also return lists."""
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(s) for s in value]
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return [s.strip() for s in str(value).split(",") if s.strip()]
    if isinstance(parsed, list):
        return [str(s) for s in parsed]
    return [str(parsed)]


@dataclass(frozen=True)
class BearerToken:
    id: str
    name: str
    hash: str
    scopes: List[str] = field(default_factory=list)
    email: Optional[str] = None
    expires: Optional[datetime] = None
    created: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BearerToken":
        return cls(
            id=str(row.get("id")),
            name=str(row.get("name") or ""),
            hash=str(row.get("hash") or ""),
            scopes=parse_scopes(row.get("scopes")),
            email=row.get("email"),
            expires=row.get("expires"),
            created=row.get("created"),
            last_updated=row.get("last_updated"),
        )

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    def public_dict(self) -> dict:
        """Representation safe to return from admin routes (no hash)."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "scopes": list(self.scopes),
            "expires": self.expires,
            "created": self.created,
            "last_updated": self.last_updated,
        }


# Scopes a bearer token can be granted, one per protected operation
SCOPES = (
    "documents/register:get",
    "documents/receipt:put",
    "documents/receipt:delete",
    "preferences/options:get",
    "preferences/user:get",
    "preferences/user:put",
)
