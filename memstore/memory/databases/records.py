"""
Helpers for mapping records onto relational tables.

Every SQL backend stores the full record as a JSON ``document`` next to
the columns it indexes (content, timestamp, metadata, tags). Reads come
back from the document, so structured content, embeddings and extra
top-level fields like ``sessionId`` round-trip unchanged.
"""

import json
import logging
from typing import Any

from ..base import MEMORIES_COLLECTION
from ..filters import content_as_text, validate_field

logger = logging.getLogger("memstore.memory.databases")

BASE_COLUMNS = ("id", "content", "timestamp")
LIKE_ESCAPE = "!"


def table_name(collection: str) -> str:
    return validate_field(collection)


def tags_table_name(collection: str) -> str:
    """``memory_tags`` for the memories collection, ``<collection>_tags`` otherwise."""
    if collection == MEMORIES_COLLECTION:
        return "memory_tags"
    return f"{table_name(collection)}_tags"


def record_tags(record: dict[str, Any]) -> list[str]:
    tags = (record.get("metadata") or {}).get("tags")
    if not isinstance(tags, (list, tuple, set)):
        return []
    # Preserve order, drop duplicates
    return list(dict.fromkeys(str(tag) for tag in tags))


def like_pattern(term: Any) -> str:
    """A ``%term%`` pattern matching the term literally (use with ESCAPE '!')."""
    escaped = str(term)
    for char in (LIKE_ESCAPE, "%", "_"):
        escaped = escaped.replace(char, LIKE_ESCAPE + char)
    return f"%{escaped}%"


def record_row(record: dict[str, Any]) -> tuple[str, str, int, str, str]:
    """Split a record into (id, content_text, timestamp, metadata_json, document_json)."""
    if not record.get("id"):
        raise ValueError("Record must have an 'id'")
    metadata = record.get("metadata") or {}
    return (
        record["id"],
        content_as_text(record.get("content", "")),
        int(record.get("timestamp") or 0),
        json.dumps(metadata, default=str),
        json.dumps(record, default=str),
    )


def document_to_record(document: Any, row_id: str) -> dict[str, Any]:
    """Decode a stored document, tolerating drivers that already parsed JSON."""
    if isinstance(document, (dict, list)):
        return document if isinstance(document, dict) else {"id": row_id}
    try:
        return json.loads(document)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid JSON document for record {row_id}: {e}")
        return {"id": row_id}
