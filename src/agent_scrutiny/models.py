"""Pydantic models, status variants and record codecs for review feedback."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field

from agent_scrutiny.errors import ValidationError
from agent_scrutiny.paths import normalize_relative_path

WHOLE_FILE_LINE = 0


def utc_timestamp() -> str:
    """Current time as ISO-8601 UTC with millisecond precision and a Z suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class FeedbackStatus(StrEnum):
    """Feedback lifecycle states. Derived from timestamps, never stored."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class Draft:
    status = FeedbackStatus.DRAFT


@dataclass(frozen=True)
class Submitted:
    at: str
    status = FeedbackStatus.SUBMITTED


@dataclass(frozen=True)
class Resolved:
    at: str
    status = FeedbackStatus.RESOLVED


ItemState = Draft | Submitted | Resolved


class ItemKey(NamedTuple):
    """Identity of a feedback item within one collection."""

    file_path: str
    line_number: int
    line_number_end: int

    def describe(self) -> str:
        if self.line_number == WHOLE_FILE_LINE:
            return f"{self.file_path} (whole file)"
        if self.line_number_end != self.line_number:
            return f"{self.file_path}:{self.line_number}-{self.line_number_end}"
        return f"{self.file_path}:{self.line_number}"


class FeedbackItem(BaseModel):
    """One review annotation anchored to a file and an optional line range."""

    file_path: str
    line_number: int = Field(default=WHOLE_FILE_LINE, description="0 means whole file")
    line_number_end: int | None = Field(default=None, description="Inclusive range end")
    whole_file: bool | None = None
    comment: str
    submitted_at: str | None = None
    resolved_at: str | None = None

    @property
    def key(self) -> ItemKey:
        end = self.line_number if self.line_number_end is None else self.line_number_end
        return ItemKey(self.file_path, self.line_number, end)

    @property
    def anchor(self) -> tuple[str, int]:
        """Where the comment widget sits: file plus starting line."""
        return (self.file_path, self.line_number)

    @property
    def is_whole_file(self) -> bool:
        return self.line_number == WHOLE_FILE_LINE

    @property
    def state(self) -> ItemState:
        return status_of(self)

    def to_record(self) -> dict[str, Any]:
        """Serialize for YAML, encoding whole-file items explicitly."""
        record: dict[str, Any] = {
            "file_path": self.file_path,
            "line_number": self.line_number,
        }
        if self.line_number_end is not None and not self.is_whole_file:
            record["line_number_end"] = self.line_number_end
        if self.is_whole_file:
            record["whole_file"] = True
        record["comment"] = self.comment
        if self.submitted_at:
            record["submitted_at"] = self.submitted_at
        if self.resolved_at:
            record["resolved_at"] = self.resolved_at
        return record


def status_of(item: FeedbackItem) -> ItemState:
    """Decode the timestamp-presence encoding into a tagged state."""
    if item.resolved_at:
        return Resolved(item.resolved_at)
    if item.submitted_at:
        return Submitted(item.submitted_at)
    return Draft()


def with_state(item: FeedbackItem, state: ItemState) -> FeedbackItem:
    """Encode a tagged state back into the item's timestamps."""
    if isinstance(state, Resolved):
        return item.model_copy(update={"resolved_at": state.at})
    if isinstance(state, Submitted):
        return item.model_copy(update={"submitted_at": state.at, "resolved_at": None})
    return item.model_copy(update={"submitted_at": None, "resolved_at": None})


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def item_from_record(raw: Any) -> FeedbackItem | None:
    """Parse one persisted record leniently. Returns None for unusable records."""
    if not isinstance(raw, dict):
        return None
    file_path = _as_text(raw.get("file_path"))
    comment = _as_text(raw.get("comment"))
    if file_path is None or comment is None:
        return None
    whole_file = raw.get("whole_file") in (True, "true")
    if whole_file:
        line_number = WHOLE_FILE_LINE
    else:
        if "line_number" not in raw:
            return None
        line_number = _as_int(raw["line_number"])
        if line_number is None or line_number < 0:
            return None

    line_number_end: int | None = None
    if line_number != WHOLE_FILE_LINE and raw.get("line_number_end") is not None:
        end = _as_int(raw["line_number_end"])
        if end is not None and end > line_number:
            line_number_end = end

    def _timestamp(field_name: str) -> str | None:
        value = raw.get(field_name)
        if isinstance(value, datetime):
            return value.isoformat()
        return value if isinstance(value, str) and value else None

    return FeedbackItem(
        file_path=file_path,
        line_number=line_number,
        line_number_end=line_number_end,
        whole_file=True if line_number == WHOLE_FILE_LINE else None,
        comment=comment,
        submitted_at=_timestamp("submitted_at"),
        resolved_at=_timestamp("resolved_at"),
    )


def normalize_item(item: FeedbackItem) -> FeedbackItem:
    """Validate an incoming item and bring it into canonical form.

    Raises ValidationError for empty file paths or comments, negative lines,
    reversed ranges and ranges on whole-file items. A range whose end equals
    its start collapses to a single-line item.
    """
    file_path = item.file_path.strip()
    if not file_path:
        raise ValidationError("file_path is required")
    if not item.comment.strip():
        raise ValidationError("comment must not be empty")
    line_number = WHOLE_FILE_LINE if item.whole_file else item.line_number
    if line_number < 0:
        raise ValidationError(f"line_number must be >= 0, got {line_number}")

    line_number_end = item.line_number_end
    if line_number_end is not None:
        if line_number == WHOLE_FILE_LINE:
            raise ValidationError("line_number_end is not allowed on whole-file feedback")
        if line_number_end < line_number:
            raise ValidationError(
                f"line_number_end ({line_number_end}) must be >= line_number ({line_number})"
            )
        if line_number_end == line_number:
            line_number_end = None

    return item.model_copy(
        update={
            "file_path": file_path,
            "line_number": line_number,
            "line_number_end": line_number_end,
            "whole_file": True if line_number == WHOLE_FILE_LINE else None,
        }
    )


def key_from_payload(payload: dict[str, Any]) -> ItemKey:
    """Build an identity key from a key-shaped request payload."""
    file_path = payload.get("file_path")
    if not isinstance(file_path, str) or not file_path.strip():
        raise ValidationError("file_path is required")
    if payload.get("whole_file") in (True, "true"):
        return ItemKey(normalize_relative_path(file_path), WHOLE_FILE_LINE, WHOLE_FILE_LINE)
    line_number = _as_int(payload.get("line_number"))
    if line_number is None or line_number < 0:
        raise ValidationError("line_number must be a non-negative integer")
    end_raw = payload.get("line_number_end")
    line_number_end = line_number if end_raw is None else _as_int(end_raw)
    if line_number_end is None:
        raise ValidationError("line_number_end must be an integer")
    return ItemKey(normalize_relative_path(file_path), line_number, line_number_end)


def sort_items(items: list[FeedbackItem]) -> list[FeedbackItem]:
    """Canonical collection order: file path, then starting line."""
    return sorted(items, key=lambda item: (item.file_path, item.line_number))
