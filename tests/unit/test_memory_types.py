"""Tests for memory types and the item kind registry."""

import json

import pytest

from cortex.memory.registry import (
    DECAYING_KINDS,
    EMBEDDING_TEXT_LIMIT,
    REGISTRY,
    DecayConfig,
    decode_list,
    get_spec,
    surprise_specs,
)
from cortex.memory.types import (
    ActivatedItem,
    DuplicateMatch,
    ItemKind,
    ItemRef,
    Relation,
    StoreResult,
)


class TestItemKind:
    """Tests for ItemKind parsing."""

    def test_parse_names(self):
        """Test every kind parses from its own value."""
        for kind in ItemKind:
            assert ItemKind.parse(kind.value) is kind

    def test_parse_todo_alias(self):
        """Test 'todo' resolves to UNFINISHED."""
        assert ItemKind.parse("todo") is ItemKind.UNFINISHED
        assert ItemKind.parse("  TODO ") is ItemKind.UNFINISHED

    def test_parse_passthrough(self):
        """Test parsing an ItemKind returns it unchanged."""
        assert ItemKind.parse(ItemKind.NOTE) is ItemKind.NOTE

    def test_parse_unknown(self):
        """Test unknown kinds raise ValueError listing valid kinds."""
        with pytest.raises(ValueError, match="Unknown item kind 'widget'"):
            ItemKind.parse("widget")


class TestRelation:
    """Tests for Relation values."""

    def test_values(self):
        """Test relation names as stored on edges."""
        assert {r.value for r in Relation} == {
            "same-session",
            "temporal",
            "same-file",
            "semantic",
        }


class TestItemRef:
    """Tests for ItemRef keys."""

    def test_key(self):
        """Test key format."""
        assert ItemRef(ItemKind.DECISION, 12).key == "decision:12"

    def test_from_key_int_id(self):
        """Test non-session ids are parsed as integers."""
        ref = ItemRef.from_key("error:7")
        assert ref == ItemRef(ItemKind.ERROR, 7)
        assert isinstance(ref.id, int)

    def test_from_key_session_id(self):
        """Test session ids stay strings, even when they contain colons."""
        ref = ItemRef.from_key("session:sess_1:abc")
        assert ref == ItemRef(ItemKind.SESSION, "sess_1:abc")

    def test_from_key_todo_alias(self):
        """Test the todo alias is accepted in keys."""
        assert ItemRef.from_key("todo:3") == ItemRef(ItemKind.UNFINISHED, 3)

    def test_from_key_missing_id(self):
        """Test a key without id is rejected."""
        with pytest.raises(ValueError):
            ItemRef.from_key("note:")

    def test_hashable(self):
        """Test refs work as dict keys."""
        counts = {ItemRef(ItemKind.NOTE, 1): 1}
        assert counts[ItemRef(ItemKind.NOTE, 1)] == 1


class TestResultSerialization:
    """Tests for to_dict helpers."""

    def test_activated_item_rounding(self):
        """Test activation is rounded to 4 places."""
        item = ActivatedItem(ItemRef(ItemKind.NOTE, 2), 0.123456)
        assert item.to_dict() == {"type": "note", "id": 2, "activation": 0.1235}

    def test_store_result_success(self):
        """Test a successful result includes type, id and importance."""
        result = StoreResult(
            success=True,
            ref=ItemRef(ItemKind.DECISION, 1),
            importance=0.61,
            associations_created=2,
        )
        assert result.to_dict() == {
            "success": True,
            "type": "decision",
            "id": 1,
            "created": True,
            "importance": 0.61,
            "associations_created": 2,
        }

    def test_store_result_duplicate_percentage(self):
        """Test the duplicate score is reported as a percentage."""
        result = StoreResult(
            success=True,
            ref=ItemRef(ItemKind.LEARNING, 4),
            duplicate=DuplicateMatch(ItemRef(ItemKind.LEARNING, 1), 0.876, "old"),
        )
        assert result.to_dict()["duplicate"] == {
            "type": "learning",
            "id": 1,
            "score": 88,
            "title": "old",
        }

    def test_store_result_error(self):
        """Test a failed result carries only the error."""
        data = StoreResult(success=False, error="bad").to_dict()
        assert data == {"success": False, "associations_created": 0, "error": "bad"}


class TestDecayConfig:
    """Tests for half-life computation."""

    def test_half_life_grows_with_access(self):
        """Test half_life = 7 * (1 + 0.5 * access_count)."""
        config = DecayConfig()
        assert config.half_life(0) == 7.0
        assert config.half_life(2) == 14.0
        assert config.half_life(-3) == 7.0


class TestRegistry:
    """Tests for the per-kind registry."""

    def test_every_kind_registered(self):
        """Test all six kinds have a spec."""
        assert set(REGISTRY) == set(ItemKind)

    def test_sessions_do_not_decay(self):
        """Test sessions are excluded from decay and surprise."""
        assert ItemKind.SESSION not in DECAYING_KINDS
        assert len(DECAYING_KINDS) == 5
        assert REGISTRY[ItemKind.SESSION].decay is None
        assert all(spec.kind is not ItemKind.SESSION for spec in surprise_specs())

    def test_learning_immunity(self):
        """Test learnings carry core_memory and auto_block immunity."""
        spec = REGISTRY[ItemKind.LEARNING]
        assert spec.immunity_flags == ("core_memory", "auto_block")
        assert spec.immunity_sql() == (
            "COALESCE(core_memory, 0) = 0 AND COALESCE(auto_block, 0) = 0"
        )

    def test_no_immunity_sql(self):
        """Test kinds without immunity flags select every row."""
        assert REGISTRY[ItemKind.NOTE].immunity_sql() == "1 = 1"

    def test_get_spec_accepts_names(self):
        """Test lookup by name and alias."""
        assert get_spec("todo").table == "unfinished"
        assert get_spec(ItemKind.ERROR).table == "errors"

    def test_coerce_id(self):
        """Test ids are coerced to the kind's id type."""
        assert get_spec(ItemKind.NOTE).coerce_id("5") == 5
        assert get_spec(ItemKind.SESSION).coerce_id("sess_1") == "sess_1"

    def test_titles(self):
        """Test display titles per kind."""
        assert get_spec(ItemKind.DECISION).title({"title": "Use WAL"}) == "Use WAL"
        long_message = "x" * 200
        assert len(get_spec(ItemKind.ERROR).title({"error_message": long_message})) == 80
        assert get_spec(ItemKind.SESSION).title({"id": "sess_1", "summary": None}) == "sess_1"

    def test_metadata_skips_missing(self):
        """Test metadata includes only present, non-null fields."""
        spec = get_spec(ItemKind.ERROR)
        assert spec.metadata({"severity": "high", "occurrences": None}) == {"severity": "high"}

    def test_embedding_text(self):
        """Test embedding text joins fields, decoding JSON lists."""
        spec = get_spec(ItemKind.NOTE)
        text = spec.embedding_text({"text": "Remember pooling", "tags": json.dumps(["db", "perf"])})
        assert text == "Remember pooling db perf"

    def test_embedding_text_truncated(self):
        """Test embedding text is bounded."""
        spec = get_spec(ItemKind.NOTE)
        assert len(spec.embedding_text({"text": "a" * 2000})) == EMBEDDING_TEXT_LIMIT

    def test_files(self):
        """Test the files column is decoded."""
        spec = get_spec(ItemKind.DECISION)
        assert spec.files({"files_affected": '["a.py", "b.py"]'}) == ["a.py", "b.py"]
        assert get_spec(ItemKind.NOTE).files({}) == []


class TestDecodeList:
    """Tests for tolerant JSON list decoding."""

    def test_json_list(self):
        assert decode_list('["a", "b"]') == ["a", "b"]

    def test_plain_string(self):
        """Test non-JSON text becomes a single entry."""
        assert decode_list("src/app.py") == ["src/app.py"]

    def test_list_passthrough(self):
        assert decode_list(["x", 1]) == ["x", "1"]

    def test_empty(self):
        assert decode_list(None) == []
        assert decode_list("") == []
