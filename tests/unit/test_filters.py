"""
Unit tests for memstore/memory/filters.py

Tests the filter AST, the generic mapping form and vector metadata pruning.
"""

import pytest

from memstore.memory.filters import (
    MAX_TAG_LENGTH,
    MAX_TAGS,
    Condition,
    Operator,
    QueryFilter,
    Sort,
    as_filter,
    content_as_text,
    get_field,
    matches_metadata,
    prune_vector_metadata,
    validate_field,
)
from tests.fixtures import make_memory_record


class TestValidateField:
    """Tests for field name validation."""

    def test_accepts_dotted_names(self):
        """Test that dotted metadata paths are accepted."""
        assert validate_field("metadata.source") == "metadata.source"
        assert validate_field("sessionId") == "sessionId"

    @pytest.mark.parametrize("name", ["", "metadata.", "a;DROP TABLE x", "meta data", "a.b'c"])
    def test_rejects_unsafe_names(self, name):
        """Test that names with unsafe characters are rejected."""
        with pytest.raises(ValueError, match="Invalid filter field"):
            validate_field(name)

    def test_condition_validates_field(self):
        """Test that Condition refuses unsafe fields at construction."""
        with pytest.raises(ValueError):
            Condition("metadata.x' OR 1=1", Operator.EQ, 1)


class TestQueryFilter:
    """Tests for the QueryFilter builder."""

    def test_builder_chains(self):
        """Test that builder methods accumulate conditions."""
        query = (
            QueryFilter()
            .where("metadata.source", "file")
            .tags_all(["a", "b"])
            .time_range(10, 20)
            .text("fox")
        )

        assert len(query) == 5
        assert query.tags == ["a", "b"]
        assert query.text_query == "fox"

    def test_empty_inputs_add_nothing(self):
        """Test that empty tags, blank text and open ranges add no conditions."""
        query = QueryFilter().tags_all([]).text("   ").time_range(None, None)
        assert not query

    def test_tags_deduplicated_across_conditions(self):
        """Test that tags from several ALL conditions are merged."""
        query = QueryFilter().tags_all(["a", "b"]).tags_all(["b", "c"])
        assert query.tags == ["a", "b", "c"]

    def test_without_text(self):
        """Test that without_text drops only the text condition."""
        query = QueryFilter().where("metadata.type", "note").text("fox")
        stripped = query.without_text()

        assert len(stripped) == 1
        assert stripped.text_query is None
        assert len(query) == 2

    def test_matches_tags_require_all(self):
        """Test that a record must carry every requested tag."""
        record = make_memory_record(tags=["a", "b"])

        assert QueryFilter().tags_all(["a"]).matches(record)
        assert QueryFilter().tags_all(["a", "b"]).matches(record)
        assert not QueryFilter().tags_all(["a", "c"]).matches(record)

    def test_matches_time_range_inclusive(self):
        """Test that range bounds are inclusive."""
        record = make_memory_record(timestamp=100)

        assert QueryFilter().time_range(100, 100).matches(record)
        assert not QueryFilter().time_range(101, None).matches(record)
        assert not QueryFilter().time_range(None, 99).matches(record)

    def test_matches_text_case_insensitive(self):
        """Test that text search ignores case."""
        record = make_memory_record(content="The Quick Brown Fox")
        assert QueryFilter().text("quick brown").matches(record)
        assert not QueryFilter().text("lazy dog").matches(record)

    def test_matches_missing_field(self):
        """Test that range conditions fail on missing fields."""
        record = make_memory_record()
        assert not QueryFilter([Condition("metadata.priority", Operator.GTE, 1)]).matches(record)

    def test_matches_top_level_field(self):
        """Test equality on a top-level field such as sessionId."""
        record = {"id": "c1", "sessionId": "s1", "content": "hi", "timestamp": 1}
        assert QueryFilter().where("sessionId", "s1").matches(record)
        assert not QueryFilter().where("sessionId", "s2").matches(record)


class TestFromMapping:
    """Tests for the generic mapping form."""

    def test_equality(self):
        """Test that plain values become equality conditions."""
        query = QueryFilter.from_mapping({"metadata.source": "file"})
        assert query.conditions == [Condition("metadata.source", Operator.EQ, "file")]

    def test_tags_all_operator_and_plain_list(self):
        """Test that $all and a plain tag list are equivalent."""
        a = QueryFilter.from_mapping({"metadata.tags": {"$all": ["x", "y"]}})
        b = QueryFilter.from_mapping({"metadata.tags": ["x", "y"]})
        assert a.conditions == b.conditions
        assert a.tags == ["x", "y"]

    def test_range_operators(self):
        """Test that $gte and $lte on one field become two conditions."""
        query = QueryFilter.from_mapping({"timestamp": {"$gte": 1, "$lte": 2}})
        assert Condition("timestamp", Operator.GTE, 1) in query.conditions
        assert Condition("timestamp", Operator.LTE, 2) in query.conditions

    def test_text_forms(self):
        """Test the $text operator with and without $search."""
        assert QueryFilter.from_mapping({"$text": {"$search": "fox"}}).text_query == "fox"
        assert QueryFilter.from_mapping({"$text": "fox"}).text_query == "fox"

    def test_none_values_skipped(self):
        """Test that None values are ignored."""
        assert not QueryFilter.from_mapping({"metadata.source": None})

    def test_unsupported_operator(self):
        """Test that unknown operators are rejected."""
        with pytest.raises(ValueError, match="Unsupported filter operator"):
            QueryFilter.from_mapping({"timestamp": {"$gt": 1}})

    def test_as_filter_passthrough(self):
        """Test that as_filter returns QueryFilter instances unchanged."""
        query = QueryFilter().where("id", "x")
        assert as_filter(query) is query
        assert not as_filter(None)


class TestSort:
    """Tests for Sort."""

    def test_default_newest_first(self):
        """Test that the default ordering is timestamp descending."""
        sort = Sort.from_value(None)
        assert sort.field == "timestamp"
        assert sort.descending is True

    def test_from_mapping(self):
        """Test the {"field": direction} form."""
        sort = Sort.from_value({"timestamp": 1})
        assert sort.descending is False

    def test_rejects_unknown_field(self):
        """Test that only sortable fields are accepted."""
        with pytest.raises(ValueError, match="Cannot sort"):
            Sort.from_value({"content": -1})


class TestHelpers:
    """Tests for record helpers."""

    def test_get_field_nested(self):
        """Test dotted lookups on nested dicts."""
        record = {"metadata": {"a": {"b": 3}}}
        assert get_field(record, "metadata.a.b") == 3
        assert get_field(record, "metadata.a.c") is None
        assert get_field(record, "metadata.a.b.c") is None

    def test_content_as_text(self):
        """Test that structured content is serialized deterministically."""
        assert content_as_text("plain") == "plain"
        assert content_as_text({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'


class TestPruneVectorMetadata:
    """Tests for vector metadata pruning."""

    def test_keeps_only_allowed_keys(self):
        """Test that unknown keys are dropped."""
        pruned = prune_vector_metadata({"source": "file", "secret": "x", "filePath": "/a.py"})
        assert pruned == {"source": "file", "filePath": "/a.py"}

    def test_drops_non_scalar_values(self):
        """Test that nested values for scalar keys are dropped."""
        pruned = prune_vector_metadata({"source": {"nested": True}, "type": "note"})
        assert pruned == {"type": "note"}

    def test_caps_tags(self):
        """Test that tags are capped in count and length."""
        tags = [f"tag{i}" for i in range(MAX_TAGS + 5)] + ["x" * 200]
        pruned = prune_vector_metadata({"tags": ["y" * 200] + tags})

        assert len(pruned["tags"]) == MAX_TAGS
        assert len(pruned["tags"][0]) == MAX_TAG_LENGTH

    def test_scalar_tags_dropped(self):
        """Test that a non-list tags value does not survive."""
        assert prune_vector_metadata({"tags": "a"}) == {}

    def test_empty(self):
        """Test that None and {} prune to {}."""
        assert prune_vector_metadata(None) == {}
        assert prune_vector_metadata({}) == {}


class TestMatchesMetadata:
    """Tests for vector metadata filter matching."""

    def test_scalar_equality(self):
        """Test that scalar filters require equality."""
        assert matches_metadata({"source": "file"}, {"source": "file"})
        assert not matches_metadata({"source": "user"}, {"source": "file"})

    def test_list_filter_requires_all(self):
        """Test that a tag list requires every tag."""
        metadata = {"tags": ["a", "b"]}
        assert matches_metadata(metadata, {"tags": ["a"]})
        assert not matches_metadata(metadata, {"tags": ["a", "c"]})
        assert not matches_metadata({}, {"tags": ["a"]})

    def test_scalar_against_list(self):
        """Test that a scalar filter matches a list value by membership."""
        assert matches_metadata({"tags": ["a", "b"]}, {"tags": "b"})

    def test_no_filter(self):
        """Test that an empty filter matches everything."""
        assert matches_metadata({"source": "x"}, None)
        assert matches_metadata({}, {"tags": []})
