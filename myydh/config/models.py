"""
Settings models for the API.

Values are validated once at startup; components receive the resulting
``Settings`` object through their constructors and never re-validate it.
"""

from __future__ import annotations

import re
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

# Table names are interpolated into SQL text, so only plain (optionally
# schema-qualified and bracket/quote delimited) identifiers are accepted.
_TABLE_IDENTIFIER = re.compile(
    r'^(?:\[?[A-Za-z_][\w$]*\]?|"[A-Za-z_][\w$]*")'
    r'(?:\.(?:\[?[A-Za-z_][\w$]*\]?|"[A-Za-z_][\w$]*")){0,2}$'
)

# Route keys that may be protected by bearer token auth
BEARER_ROUTE_KEYS = (
    "documents/register",
    "documents/receipt",
    "preferences/options",
    "preferences/user",
)


class DatabaseTables(BaseModel):
    bearer_token: str = "access.tbl_tokens"
    document_register: str
    patient_pref: str
    patient_pref_type_lookup: str
    patient_pref_value_lookup: str
    read_receipt: str

    @field_validator("*")
    @classmethod
    def _check_identifier(cls, v: str) -> str:
        v = v.strip()
        if not _TABLE_IDENTIFIER.match(v):
            raise ValueError(f"invalid table identifier: {v!r}")
        return v


class DatabaseSettings(BaseModel):
    client: Literal["mssql", "postgresql"] = "mssql"
    connection: str
    tables: DatabaseTables


class AdminSettings(BaseModel):
    username: str
    password: str = Field(..., min_length=8)


class CorsSettings(BaseModel):
    origin: Union[bool, str, List[str]] = False
    allowed_headers: Optional[str] = None
    allow_credentials: bool = False
    exposed_headers: Optional[str] = None
    max_age: Optional[int] = None

    def allow_origins(self) -> List[str]:
        if self.origin is True:
            return ["*"]
        if self.origin is False:
            return []
        if isinstance(self.origin, str):
            return [self.origin]
        return list(self.origin)


class ProcessLoadSettings(BaseModel):
    """Load shedding thresholds; 0 disables a check."""

    max_event_loop_delay: float = Field(0, ge=0)
    max_event_loop_utilization: float = Field(0, ge=0, le=1)
    max_heap_used_bytes: int = Field(0, ge=0)
    max_rss_bytes: int = Field(0, ge=0)
    sample_interval: float = Field(1.0, gt=0)

    @property
    def enabled(self) -> bool:
        return any(
            (
                self.max_event_loop_delay,
                self.max_event_loop_utilization,
                self.max_heap_used_bytes,
                self.max_rss_bytes,
            )
        )


class RateLimitSettings(BaseModel):
    max: int = Field(1000, ge=1)
    window_seconds: int = 60
    allow_list: List[str] = Field(default_factory=list)
    backend: Literal["memory", "redis"] = "memory"
    redis_url: Optional[str] = None


class Settings(BaseModel):
    host: str = "localhost"
    port: int = 8204
    log_level: str = "INFO"
    cors: CorsSettings = Field(default_factory=CorsSettings)
    process_load: ProcessLoadSettings = Field(default_factory=ProcessLoadSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    admin: AdminSettings
    bearer_token_auth_enabled: bool = False
    bearer_token_auth_routes: Dict[str, bool] = Field(default_factory=dict)
    database: DatabaseSettings

    @field_validator("bearer_token_auth_routes")
    @classmethod
    def _check_route_keys(cls, v: Dict[str, bool]) -> Dict[str, bool]:
        unknown = sorted(set(v) - set(BEARER_ROUTE_KEYS))
        if unknown:
            raise ValueError(f"unknown bearer token route key(s): {', '.join(unknown)}")
        return v

    def bearer_auth_required(self, route_key: str) -> bool:
        return self.bearer_token_auth_routes.get(
            route_key, self.bearer_token_auth_enabled
        )
