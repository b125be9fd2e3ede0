"""
Content negotiation and JSON/XML serialization.

Handlers return plain mappings wrapped in ``NegotiatedResponse``; the
request's ``Accept`` header decides whether the body is rendered as JSON
or as XML under a ``<response>`` root element.
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime
from http import HTTPStatus
from typing import Any, List, Mapping, Optional, Sequence, Tuple
from xml.etree import ElementTree as ET

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from starlette.responses import Response

JSON_MEDIA_TYPE = "application/json"
XML_MEDIA_TYPE = "application/xml"
SERIALIZED_MEDIA_TYPES = (JSON_MEDIA_TYPE, XML_MEDIA_TYPE)

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'


def _parse_accept(header: str) -> List[Tuple[str, str, float, int]]:
    """Parse an Accept header into ``(type, subtype, q, position)`` tuples."""
    ranges = []
    for pos, part in enumerate(header.split(",")):
        pieces = [p.strip() for p in part.split(";")]
        media = pieces[0].lower()
        if not media:
            continue
        if media == "*":
            media = "*/*"
        if "/" not in media:
            continue
        mtype, subtype = media.split("/", 1)
        q = 1.0
        for param in pieces[1:]:
            key, _, val = param.partition("=")
            if key.strip().lower() == "q":
                try:
                    q = float(val.strip())
                except ValueError:
                    q = 0.0
        ranges.append((mtype, subtype, q, pos))
    return ranges


def _specificity(mtype: str, subtype: str, offer: Tuple[str, str]) -> int:
    if mtype == offer[0] and subtype == offer[1]:
        return 3
    if mtype == offer[0] and subtype == "*":
        return 2
    if mtype == "*" and subtype == "*":
        return 1
    return 0


def negotiate(accept: Optional[str], offered: Sequence[str]) -> Optional[str]:
    """Pick the best of ``offered`` for an Accept header.

    A missing or blank header accepts anything and yields the first
    offer. Returns None when nothing offered is acceptable.
    """
    if not offered:
        return None
    if accept is None or not accept.strip():
        return offered[0]

    ranges = _parse_accept(accept)
    best: Optional[str] = None
    best_key: Tuple[float, int, int, int] = (0.0, 0, 0, 0)
    for offer_index, offer in enumerate(offered):
        parts = tuple(offer.lower().split("/", 1))
        # Most specific matching range decides the offer's quality
        match: Optional[Tuple[int, float, int]] = None
        for mtype, subtype, q, pos in ranges:
            spec = _specificity(mtype, subtype, parts)  # type: ignore[arg-type]
            if spec and (match is None or spec > match[0]):
                match = (spec, q, pos)
        if match is None or match[1] <= 0:
            continue
        key = (match[1], match[0], -match[2], -offer_index)
        if best is None or key > best_key:
            best, best_key = offer, key
    return best


# Characters allowed by the XML 1.0 Char production, besides tab, LF and CR
_XML_CHAR_RANGES = ((0x20, 0xD7FF), (0xE000, 0xFFFD), (0x10000, 0x10FFFF))
_INVALID_XML_CHARS = re.compile(
    "[^\t\n\r" + "".join(f"{chr(lo)}-{chr(hi)}" for lo, hi in _XML_CHAR_RANGES) + "]"
)
_INVALID_NAME_CHARS = re.compile(r"[^\w.-]")


def xml_name(key: Any) -> str:
    """Turn a mapping key into a well-formed element name.

    Characters not allowed in names become ``_``; names that do not start
    with a letter or underscore get a ``_`` prefix.
    """
    name = _INVALID_NAME_CHARS.sub("_", _INVALID_XML_CHARS.sub("", str(key)))
    if not name or not (name[0].isalpha() or name[0] == "_"):
        name = "_" + name
    return name


def _xml_text(value: Any) -> str:
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (datetime, date)):
        text = value.isoformat()
    else:
        text = str(value)
    return _INVALID_XML_CHARS.sub("", text)


def _append(parent: ET.Element, key: str, value: Any) -> None:
    if isinstance(value, (list, tuple)):
        if not value:
            ET.SubElement(parent, key)
        for item in value:
            _append(parent, key, item)
        return
    element = ET.SubElement(parent, key)
    if isinstance(value, Mapping):
        for k, v in value.items():
            _append(element, xml_name(k), v)
    elif value is not None:
        element.text = _xml_text(value)


def to_xml(payload: Any, root: str = "response") -> str:
    """Serialize a mapping to an XML document with a ``<response>`` root.

    Keys keep their insertion order; sequences become one element per item
    under the sequence's key, and an empty sequence an empty element.
    """
    element = ET.Element(root)
    if isinstance(payload, Mapping):
        for k, v in payload.items():
            _append(element, xml_name(k), v)
    elif payload is not None:
        element.text = _xml_text(payload)
    return XML_DECLARATION + ET.tostring(element, encoding="unicode")


class NegotiatedResponse(Response):
    """Response rendered as JSON or XML depending on the request."""

    def __init__(
        self,
        content: Any,
        request: Optional[Request] = None,
        status_code: int = 200,
        headers: Optional[Mapping[str, str]] = None,
        media_type: Optional[str] = None,
    ):
        if media_type is None:
            accept = request.headers.get("accept") if request is not None else None
            media_type = negotiate(accept, SERIALIZED_MEDIA_TYPES) or JSON_MEDIA_TYPE
        self.serialized_as = media_type
        super().__init__(
            content=content,
            status_code=status_code,
            headers=dict(headers or {}),
            media_type=f"{media_type}; charset=utf-8",
        )

    def render(self, content: Any) -> bytes:
        # Both formats see the same encoded data (UUIDs, times, bytes...)
        encoded = jsonable_encoder(content)
        if self.serialized_as == XML_MEDIA_TYPE:
            return to_xml(encoded).encode("utf-8")
        return json.dumps(
            encoded,
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        ).encode("utf-8")


def error_body(status_code: int, message: str) -> dict:
    try:
        error = HTTPStatus(status_code).phrase
    except ValueError:
        error = "Error"
    return {"error": error, "message": message, "statusCode": status_code}
