"""Normalise session/update payloads into ``(kind, fields)`` pairs.

Updates arrive either as ``acp.schema`` models or as plain mappings decoded
from the wire (camelCase keys). Everything downstream reads snake_case.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import BaseModel

logger = logging.getLogger(__name__)

KIND_KEY = "session_update"
CONFIG_OPTION_KINDS = frozenset({"config_option_update", "config_options_update"})

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case(key: str) -> str:
    if key in ("_meta", "field_meta"):
        return "meta"
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def to_plain(value: Any) -> Any:
    """Dump pydantic models to dicts; mappings get their top-level keys snake_cased."""

    if isinstance(value, BaseModel):
        dumped = value.model_dump(exclude_none=True)
        if not isinstance(dumped, dict):
            return dumped
        return {snake_case(k): v for k, v in dumped.items()}
    if isinstance(value, Mapping):
        return {snake_case(str(k)): v for k, v in value.items()}
    return value


@dataclass(frozen=True)
class SessionUpdate:
    kind: str | None
    fields: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


def _unwrap(update: Any) -> tuple[Any, str | None]:
    if isinstance(update, BaseModel) and hasattr(update, "update") and hasattr(update, "session_id"):
        return update.update, update.session_id
    if isinstance(update, Mapping) and "update" in update and ("sessionId" in update or "session_id" in update):
        return update["update"], update.get("sessionId") or update.get("session_id")
    return update, None


def normalize_update(update: Any) -> SessionUpdate:
    inner, session_id = _unwrap(update)
    if isinstance(inner, BaseModel):
        kind = getattr(inner, KIND_KEY, None)
        fields = to_plain(inner)
    elif isinstance(inner, Mapping):
        fields = to_plain(inner)
        kind = fields.get(KIND_KEY)
    else:
        logger.debug("Ignoring unrecognised update payload type=%s", type(inner).__name__)
        return SessionUpdate(kind=None, session_id=session_id)
    fields.pop(KIND_KEY, None)
    return SessionUpdate(kind=kind, fields=fields, session_id=session_id)


def chunk_text(fields: Mapping[str, Any]) -> str | None:
    """Text carried by a message/thought chunk, or None for non-text content."""

    content = fields.get("content")
    if isinstance(content, str):
        return content
    content = to_plain(content)
    if isinstance(content, Mapping) and content.get("type", "text") == "text":
        text = content.get("text")
        return text if isinstance(text, str) else None
    return None
