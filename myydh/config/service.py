"""
Build ``Settings`` from environment variables.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from .models import Settings

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when environment variables do not form a valid configuration."""


def parse_cors_origin(param: Optional[str]) -> Union[bool, str, List[str]]:
    """Convert "true"/"false" to a bool and comma-delimited values to a list."""
    if param is None or not param.strip():
        return False
    value = param.strip()
    if value == "true":
        return True
    if value == "false":
        return False
    if "," in value:
        return [v.strip() for v in value.split(",") if v.strip()]
    return value


def _get_bool(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    v = env.get(key)
    return default if v is None or v == "" else v.strip().lower() in ("1", "true", "yes", "on")


def _get_json(env: Mapping[str, str], key: str, expected: type) -> Any:
    raw = env.get(key)
    if not raw:
        return expected()
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{key} is not valid JSON: {e}") from e
    if not isinstance(value, expected):
        raise ConfigError(f"{key} must be a JSON {expected.__name__}")
    return value


def _drop_empty(data: Dict[str, Any]) -> Dict[str, Any]:
    """Remove unset values so model defaults apply."""
    return {k: v for k, v in data.items() if v is not None and v != ""}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ

    data: Dict[str, Any] = _drop_empty(
        {
            "host": env.get("HOST"),
            "port": env.get("PORT"),
            "log_level": (env.get("LOG_LEVEL") or "").upper() or None,
            "bearer_token_auth_enabled": _get_bool(env, "BEARER_TOKEN_AUTH_ENABLED"),
            "bearer_token_auth_routes": _get_json(env, "BEARER_TOKEN_AUTH_ROUTES", dict),
        }
    )
    data["cors"] = _drop_empty(
        {
            "origin": parse_cors_origin(env.get("CORS_ORIGIN")),
            "allowed_headers": env.get("CORS_ALLOWED_HEADERS"),
            "allow_credentials": _get_bool(env, "CORS_ALLOW_CREDENTIALS"),
            "exposed_headers": env.get("CORS_EXPOSED_HEADERS"),
            "max_age": env.get("CORS_MAX_AGE"),
        }
    )
    data["process_load"] = _drop_empty(
        {
            "max_event_loop_delay": env.get("PROC_LOAD_MAX_EVENT_LOOP_DELAY"),
            "max_event_loop_utilization": env.get("PROC_LOAD_MAX_EVENT_LOOP_UTILIZATION"),
            "max_heap_used_bytes": env.get("PROC_LOAD_MAX_HEAP_USED_BYTES"),
            "max_rss_bytes": env.get("PROC_LOAD_MAX_RSS_BYTES"),
        }
    )
    data["rate_limit"] = _drop_empty(
        {
            "max": env.get("RATE_LIMIT_MAX_CONNECTIONS_PER_MIN"),
            "allow_list": _get_json(env, "RATE_LIMIT_EXCLUDED_ARRAY", list),
            "backend": (env.get("RATE_LIMIT_BACKEND") or "").lower() or None,
            "redis_url": env.get("REDIS_URL"),
        }
    )
    data["admin"] = {
        "username": env.get("ADMIN_USERNAME", ""),
        "password": env.get("ADMIN_PASSWORD", ""),
    }
    data["database"] = _drop_empty(
        {
            "client": env.get("DB_CLIENT"),
            "connection": env.get("DB_CONNECTION_STRING"),
            "tables": _drop_empty(
                {
                    "bearer_token": env.get("DB_BEARER_TOKEN_TABLE"),
                    "document_register": env.get("DB_DOCUMENT_REGISTER_TABLE"),
                    "patient_pref": env.get("DB_PATIENT_PREFERENCES_TABLE"),
                    "patient_pref_type_lookup": env.get("DB_PATIENT_PREFERENCES_TYPE_TABLE"),
                    "patient_pref_value_lookup": env.get("DB_PATIENT_PREFERENCES_VALUE_TABLE"),
                    "read_receipt": env.get("DB_READ_RECEIPT_DOCS_TABLE"),
                }
            ),
        }
    )

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e

    if settings.cors.origin is True and settings.cors.allow_credentials:
        logger.warning(
            "CORS_ORIGIN=true with credentials reflects any origin; set explicit origins in production"
        )
    return settings
