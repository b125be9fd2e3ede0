from __future__ import annotations

from typing import Any


def clean_object(value: Any) -> Any:
    """Return a copy of ``value`` without keys whose value is None or "".

    Recurses through mappings and sequences. Falsy values such as ``0``,
    ``False`` and empty containers are kept.
    """
    if isinstance(value, dict):
        return {
            k: clean_object(v)
            for k, v in value.items()
            if v is not None and not (isinstance(v, str) and v == "")
        }
    if isinstance(value, (list, tuple)):
        return [clean_object(v) for v in value]
    return value
