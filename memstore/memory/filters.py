"""
Generic query model shared by every database and vector store backend.

Callers describe what they want as a small filter AST (a list of
``Condition`` triples) and each backend compiles that into its native
dialect. Keeping the semantics here means the five database backends
agree on what "tags" or "timestamp range" actually mean.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Mapping

_FIELD_SEGMENT = re.compile(r"^[A-Za-z0-9_]+$")

SORTABLE_FIELDS = ("timestamp", "id")

# Keys that survive into vector store metadata. Everything else stays in
# the database copy only.
VECTOR_METADATA_KEYS = (
    "source",
    "type",
    "tags",
    "filePath",
    "fileName",
    "extension",
    "chunkIndex",
    "chunkId",
    "url",
    "sessionId",
    "userId",
)
MAX_TAGS = 20
MAX_TAG_LENGTH = 50


class Operator(str, Enum):
    """Comparison operators understood by every backend."""
    EQ = "eq"
    GTE = "gte"
    LTE = "lte"
    ALL = "all"  # list field must contain every value
    TEXT = "text"  # free-text match on content


def validate_field(name: str) -> str:
    """
    Check that a (possibly dotted) field name is safe to embed in a query.

    Raises:
        ValueError: If any segment contains characters outside [A-Za-z0-9_].
    """
    segments = name.split(".")
    if not name or not all(_FIELD_SEGMENT.match(s) for s in segments):
        raise ValueError(f"Invalid filter field: {name!r}")
    return name


@dataclass(frozen=True)
class Condition:
    """A single ``field operator value`` triple."""
    field: str
    operator: Operator
    value: Any

    def __post_init__(self):
        validate_field(self.field)

    @property
    def is_metadata(self) -> bool:
        return self.field.startswith("metadata.")

    @property
    def metadata_key(self) -> str:
        return self.field[len("metadata."):]


@dataclass
class QueryFilter:
    """An AND-combination of conditions."""
    conditions: list[Condition] = field(default_factory=list)

    def where(self, name: str, value: Any) -> "QueryFilter":
        self.conditions.append(Condition(name, Operator.EQ, value))
        return self

    def tags_all(self, tags: list[str]) -> "QueryFilter":
        if tags:
            self.conditions.append(
                Condition("metadata.tags", Operator.ALL, [str(t) for t in tags])
            )
        return self

    def time_range(self, gte: int | None = None, lte: int | None = None) -> "QueryFilter":
        if gte is not None:
            self.conditions.append(Condition("timestamp", Operator.GTE, gte))
        if lte is not None:
            self.conditions.append(Condition("timestamp", Operator.LTE, lte))
        return self

    def text(self, query: str | None) -> "QueryFilter":
        if query and query.strip():
            self.conditions.append(Condition("content", Operator.TEXT, query.strip()))
        return self

    def __iter__(self) -> Iterator[Condition]:
        return iter(self.conditions)

    def __len__(self) -> int:
        return len(self.conditions)

    def __bool__(self) -> bool:
        return bool(self.conditions)

    def of(self, operator: Operator) -> list[Condition]:
        return [c for c in self.conditions if c.operator == operator]

    @property
    def tags(self) -> list[str]:
        """All tags required by ALL conditions on ``metadata.tags``, deduplicated."""
        tags: list[str] = []
        for condition in self.of(Operator.ALL):
            if condition.field == "metadata.tags":
                for tag in condition.value:
                    if tag not in tags:
                        tags.append(tag)
        return tags

    @property
    def text_query(self) -> str | None:
        texts = self.of(Operator.TEXT)
        return texts[0].value if texts else None

    def without_text(self) -> "QueryFilter":
        return QueryFilter([c for c in self.conditions if c.operator != Operator.TEXT])

    def matches(self, record: Mapping[str, Any]) -> bool:
        """Evaluate the filter against a plain record dict."""
        return all(_matches_condition(record, c) for c in self.conditions)

    @classmethod
    def from_mapping(cls, query: Mapping[str, Any] | None) -> "QueryFilter":
        """
        Build a filter from the generic Mongo-style mapping.

        Supported shapes::

            {"metadata.source": "file"}
            {"metadata.tags": {"$all": ["a", "b"]}}   # or a plain list
            {"timestamp": {"$gte": 1, "$lte": 2}}
            {"$text": {"$search": "fox"}}              # or a plain string
            {"sessionId": "s1"}
        """
        result = cls()
        for key, value in (query or {}).items():
            if key == "$text":
                search = value.get("$search") if isinstance(value, Mapping) else value
                result.text(search)
            elif isinstance(value, Mapping):
                for op, operand in value.items():
                    if op == "$all":
                        if operand:
                            result.conditions.append(
                                Condition(key, Operator.ALL, [str(v) for v in operand])
                            )
                    elif op == "$gte":
                        result.conditions.append(Condition(key, Operator.GTE, operand))
                    elif op == "$lte":
                        result.conditions.append(Condition(key, Operator.LTE, operand))
                    elif op == "$eq":
                        result.conditions.append(Condition(key, Operator.EQ, operand))
                    else:
                        raise ValueError(f"Unsupported filter operator {op!r} on {key!r}")
            elif key == "metadata.tags" and isinstance(value, (list, tuple, set)):
                result.tags_all(list(value))
            elif value is not None:
                result.where(key, value)
        return result


def as_filter(query: "QueryFilter | Mapping[str, Any] | None") -> QueryFilter:
    """Normalize whatever a caller passed as a query into a QueryFilter."""
    if isinstance(query, QueryFilter):
        return query
    return QueryFilter.from_mapping(query)


@dataclass(frozen=True)
class Sort:
    """Result ordering. Newest first unless asked otherwise."""
    field: str = "timestamp"
    descending: bool = True

    def __post_init__(self):
        if self.field not in SORTABLE_FIELDS:
            raise ValueError(f"Cannot sort by {self.field!r}; allowed: {SORTABLE_FIELDS}")

    @classmethod
    def from_value(cls, value: "Sort | Mapping[str, int] | None") -> "Sort":
        """Accept a Sort, a ``{"timestamp": -1}`` mapping, or None."""
        if value is None:
            return cls()
        if isinstance(value, Sort):
            return value
        if len(value) != 1:
            raise ValueError("Sort mapping must name exactly one field")
        (name, direction), = value.items()
        return cls(field=name, descending=direction < 0)


def get_field(record: Mapping[str, Any], name: str) -> Any:
    """Resolve a dotted field name against a nested record dict."""
    current: Any = record
    for segment in name.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(segment)
    return current


def content_as_text(content: Any) -> str:
    """The text form of a record's content, used for embedding and text search."""
    if isinstance(content, str):
        return content
    return json.dumps(content, sort_keys=True, default=str)


def _matches_condition(record: Mapping[str, Any], condition: Condition) -> bool:
    actual = get_field(record, condition.field)
    op = condition.operator

    if op == Operator.EQ:
        if isinstance(actual, list):
            return condition.value in actual
        return actual == condition.value
    if op == Operator.ALL:
        if not isinstance(actual, list):
            return False
        present = {str(v) for v in actual}
        return all(str(v) in present for v in condition.value)
    if op == Operator.TEXT:
        haystack = content_as_text(record.get("content", ""))
        return condition.value.lower() in haystack.lower()
    if actual is None:
        return False
    if op == Operator.GTE:
        return actual >= condition.value
    if op == Operator.LTE:
        return actual <= condition.value
    return False


def prune_vector_metadata(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Reduce entry metadata to what a vector index should hold.

    Only allow-listed keys survive, only with scalar values. Tags are
    stringified, truncated to MAX_TAG_LENGTH and capped at MAX_TAGS.
    The same transformation is applied to similarity-search filters so
    they can only reference keys that actually reach the index.
    """
    pruned: dict[str, Any] = {}
    if not metadata:
        return pruned

    for key in VECTOR_METADATA_KEYS:
        if key not in metadata:
            continue
        value = metadata[key]
        if key == "tags":
            if isinstance(value, (list, tuple, set)):
                tags = [str(tag)[:MAX_TAG_LENGTH] for tag in value]
                pruned["tags"] = tags[:MAX_TAGS]
        elif isinstance(value, (str, int, float, bool)):
            pruned[key] = value
    return pruned


def matches_metadata(metadata: Mapping[str, Any], metadata_filter: Mapping[str, Any] | None) -> bool:
    """
    Check vector metadata against a pruned filter.

    Scalars must be equal (or contained, when the stored value is a list).
    List filter values require every element to be present.
    """
    for key, expected in (metadata_filter or {}).items():
        actual = metadata.get(key)
        if isinstance(expected, (list, tuple, set)):
            if not expected:
                continue
            if not isinstance(actual, (list, tuple)):
                return False
            if not set(expected).issubset(actual):
                return False
        elif isinstance(actual, (list, tuple)):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True
