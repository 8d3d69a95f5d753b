"""Tests for feedback models, status variants and record parsing."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from agent_scrutiny.errors import ValidationError
from agent_scrutiny.models import (
    Draft,
    FeedbackItem,
    FeedbackStatus,
    ItemKey,
    Resolved,
    Submitted,
    item_from_record,
    key_from_payload,
    normalize_item,
    sort_items,
    status_of,
    utc_timestamp,
    with_state,
)


def _item(**overrides) -> FeedbackItem:
    base = {"file_path": "src/app.py", "line_number": 3, "comment": "rename this"}
    base.update(overrides)
    return FeedbackItem(**base)


class TestStatus:
    def test_no_timestamps_is_draft(self) -> None:
        assert status_of(_item()) == Draft()

    def test_submitted_timestamp(self) -> None:
        state = status_of(_item(submitted_at="2026-01-01T00:00:00.000Z"))
        assert state == Submitted("2026-01-01T00:00:00.000Z")
        assert state.status == FeedbackStatus.SUBMITTED

    def test_resolved_wins_over_submitted(self) -> None:
        item = _item(submitted_at="a", resolved_at="b")
        assert item.state == Resolved("b")

    def test_with_state_resolved_keeps_submitted_at(self) -> None:
        item = with_state(_item(submitted_at="a"), Resolved("b"))
        assert item.submitted_at == "a"
        assert item.resolved_at == "b"

    def test_with_state_draft_clears_timestamps(self) -> None:
        item = with_state(_item(submitted_at="a", resolved_at="b"), Draft())
        assert item.submitted_at is None
        assert item.resolved_at is None

    def test_utc_timestamp_format(self) -> None:
        stamp = utc_timestamp()
        assert stamp.endswith("Z")
        parsed = datetime.fromisoformat(stamp.replace("Z", "+00:00"))
        assert parsed.tzinfo == UTC


class TestItemKey:
    def test_single_line_key_uses_start_as_end(self) -> None:
        assert _item().key == ItemKey("src/app.py", 3, 3)

    def test_range_key(self) -> None:
        assert _item(line_number_end=7).key == ItemKey("src/app.py", 3, 7)

    def test_ranges_with_same_start_are_distinct(self) -> None:
        assert _item(line_number_end=5).key != _item(line_number_end=6).key

    def test_describe(self) -> None:
        assert ItemKey("a.py", 0, 0).describe() == "a.py (whole file)"
        assert ItemKey("a.py", 2, 2).describe() == "a.py:2"
        assert ItemKey("a.py", 2, 4).describe() == "a.py:2-4"


class TestToRecord:
    def test_whole_file_record(self) -> None:
        record = _item(line_number=0).to_record()
        assert record == {
            "file_path": "src/app.py",
            "line_number": 0,
            "whole_file": True,
            "comment": "rename this",
        }

    def test_field_order(self) -> None:
        record = _item(line_number_end=5, submitted_at="s", resolved_at="r").to_record()
        assert list(record) == [
            "file_path",
            "line_number",
            "line_number_end",
            "comment",
            "submitted_at",
            "resolved_at",
        ]


class TestItemFromRecord:
    def test_whole_file_flag_forces_line_zero(self) -> None:
        item = item_from_record({"file_path": "a.py", "line_number": 9, "whole_file": True, "comment": "c"})
        assert item is not None
        assert item.line_number == 0
        assert item.is_whole_file

    def test_string_whole_file_flag(self) -> None:
        item = item_from_record({"file_path": "a.py", "whole_file": "true", "comment": "c"})
        assert item is not None and item.is_whole_file

    def test_missing_fields_are_skipped(self) -> None:
        assert item_from_record({"file_path": "a.py", "line_number": 1}) is None
        assert item_from_record({"comment": "c", "line_number": 1}) is None
        assert item_from_record({"file_path": "a.py", "comment": "c"}) is None
        assert item_from_record("not a mapping") is None
        assert item_from_record({"file_path": "a.py", "line_number": 1, "comment": None}) is None
        assert item_from_record({"file_path": None, "line_number": 1, "comment": "c"}) is None
        assert item_from_record({"file_path": "a.py", "line_number": 1, "comment": "  "}) is None
        assert item_from_record({"file_path": "a.py", "line_number": 1, "comment": ["c"]}) is None
        assert item_from_record({"file_path": True, "line_number": 1, "comment": "c"}) is None

    def test_numeric_comment_is_kept_as_text(self) -> None:
        item = item_from_record({"file_path": "a.py", "line_number": 1, "comment": 42})
        assert item is not None
        assert item.comment == "42"

    def test_negative_line_is_skipped(self) -> None:
        assert item_from_record({"file_path": "a.py", "line_number": -2, "comment": "c"}) is None

    def test_invalid_end_is_dropped(self) -> None:
        item = item_from_record(
            {"file_path": "a.py", "line_number": 5, "line_number_end": 2, "comment": "c"}
        )
        assert item is not None
        assert item.line_number_end is None

    def test_numeric_strings_are_accepted(self) -> None:
        item = item_from_record(
            {"file_path": "a.py", "line_number": "4", "line_number_end": "6", "comment": "c"}
        )
        assert item is not None
        assert item.key == ItemKey("a.py", 4, 6)

    def test_datetime_timestamps_become_strings(self) -> None:
        when = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        item = item_from_record(
            {"file_path": "a.py", "line_number": 1, "comment": "c", "submitted_at": when}
        )
        assert item is not None
        assert item.submitted_at == when.isoformat()


class TestNormalizeItem:
    def test_rejects_empty_comment(self) -> None:
        with pytest.raises(ValidationError):
            normalize_item(_item(comment="   "))

    def test_rejects_empty_path(self) -> None:
        with pytest.raises(ValidationError):
            normalize_item(_item(file_path=" "))

    def test_rejects_negative_line(self) -> None:
        with pytest.raises(ValidationError):
            normalize_item(_item(line_number=-1))

    def test_rejects_reversed_range(self) -> None:
        with pytest.raises(ValidationError, match="must be >="):
            normalize_item(_item(line_number=5, line_number_end=4))

    def test_rejects_range_on_whole_file(self) -> None:
        with pytest.raises(ValidationError):
            normalize_item(_item(line_number=0, line_number_end=3))

    def test_equal_end_collapses(self) -> None:
        item = normalize_item(_item(line_number=5, line_number_end=5))
        assert item.line_number_end is None

    def test_whole_file_flag_zeroes_line(self) -> None:
        item = normalize_item(_item(line_number=8, whole_file=True))
        assert item.line_number == 0
        assert item.whole_file is True


class TestKeyFromPayload:
    def test_single_line(self) -> None:
        assert key_from_payload({"file_path": "a.py", "line_number": 2}) == ItemKey("a.py", 2, 2)

    def test_whole_file(self) -> None:
        assert key_from_payload({"file_path": "a.py", "whole_file": True}) == ItemKey("a.py", 0, 0)

    def test_missing_path(self) -> None:
        with pytest.raises(ValidationError):
            key_from_payload({"line_number": 2})

    def test_bad_line(self) -> None:
        with pytest.raises(ValidationError):
            key_from_payload({"file_path": "a.py", "line_number": "x"})

    def test_path_is_normalized(self) -> None:
        assert key_from_payload({"file_path": "./src\\app.py", "line_number": 3}) == ItemKey(
            "src/app.py", 3, 3
        )
        assert key_from_payload({"file_path": " ./README.md ", "whole_file": True}) == ItemKey(
            "README.md", 0, 0
        )


def test_sort_items_orders_by_path_then_line() -> None:
    items = [
        _item(file_path="b.py", line_number=1),
        _item(file_path="a.py", line_number=9),
        _item(file_path="a.py", line_number=0),
    ]
    ordered = [(item.file_path, item.line_number) for item in sort_items(items)]
    assert ordered == [("a.py", 0), ("a.py", 9), ("b.py", 1)]
