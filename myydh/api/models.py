from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ..identity.models import SCOPES


class BearerTokenCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    scopes: List[str] = Field(..., min_length=1)
    expires: Optional[datetime] = None

    @field_validator("scopes")
    @classmethod
    def _known_scopes(cls, v: List[str]) -> List[str]:
        unknown = [s for s in v if s not in SCOPES]
        if unknown:
            raise ValueError(f"unknown scope(s): {', '.join(unknown)}")
        # keep order, drop duplicates
        return list(dict.fromkeys(v))


class PreferenceTypeUpdate(BaseModel):
    id: int = Field(..., ge=1)
    priority: int = Field(..., ge=0)
    selected: Literal[1, 2]


class PreferenceUpdate(BaseModel):
    type: PreferenceTypeUpdate


class UserPreferencesUpdate(BaseModel):
    preferences: List[PreferenceUpdate] = Field(..., min_length=1, max_length=4)

    @field_validator("preferences")
    @classmethod
    def _unique_types(cls, v: List[PreferenceUpdate]) -> List[PreferenceUpdate]:
        ids = [p.type.id for p in v]
        if len(ids) != len(set(ids)):
            raise ValueError("preference type ids must be unique")
        return v
