"""File-backed annotation store with draft/submitted/resolved lifecycle.

Each reviewed root keeps its feedback under ``<root>/.scrutiny/``:

- ``feedback.yaml``           active collection (drafts and submitted items)
- ``feedback-resolved.yaml``  resolved collection
- ``feedback-unsent.yaml``    legacy predecessor of the active collection,
                              read once to seed it and never written
- ``feedback-<id>.yaml``      hand-off snapshots written for the agent

Every mutation is a full read-merge-write cycle against the backing files.
Writes are serialized per file through in-process asyncio locks; two
processes writing the same root concurrently are not supported.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import sys
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any

import pydantic
import yaml

from agent_scrutiny.errors import NotFoundError, StorageIOError, ValidationError
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
    utc_timestamp,
    with_state,
)
from agent_scrutiny.paths import check_relative_path, normalize_relative_path
from agent_scrutiny.state_machine import validate_delete, validate_transition

logger = logging.getLogger("agent_scrutiny")

SCRUTINY_DIRNAME = ".scrutiny"
ACTIVE_FILENAME = "feedback.yaml"
RESOLVED_FILENAME = "feedback-resolved.yaml"
LEGACY_UNSENT_FILENAME = "feedback-unsent.yaml"
HANDOFF_FILENAME_TEMPLATE = "feedback-{destination_id}.yaml"

_ACTIVE = "active"
_RESOLVED = "resolved"
_LOCK_ORDER = (_ACTIVE, _RESOLVED)
_DESTINATION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

ItemLike = FeedbackItem | dict[str, Any]
KeyLike = FeedbackItem | ItemKey | dict[str, Any]


def _active_status(item: FeedbackItem) -> FeedbackStatus:
    # Items in the active collection are drafts or submitted, whatever stray
    # timestamps a hand-edited file may carry.
    return FeedbackStatus.SUBMITTED if item.submitted_at else FeedbackStatus.DRAFT


def _dump_yaml(items: Iterable[FeedbackItem]) -> str:
    return yaml.safe_dump(
        {"items": [item.to_record() for item in items]},
        sort_keys=False,
        allow_unicode=True,
        width=sys.maxsize,
    )


class FeedbackStore:
    """Annotation collections for one reviewed root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()
        self._log_extra = {"root": str(self.root)}
        self._locks: dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in _LOCK_ORDER}

    # ---- paths ----

    @property
    def scrutiny_dir(self) -> Path:
        return self.root / SCRUTINY_DIRNAME

    @property
    def active_path(self) -> Path:
        return self.scrutiny_dir / ACTIVE_FILENAME

    @property
    def resolved_path(self) -> Path:
        return self.scrutiny_dir / RESOLVED_FILENAME

    @property
    def legacy_path(self) -> Path:
        return self.scrutiny_dir / LEGACY_UNSENT_FILENAME

    # ---- synchronous file I/O (run via asyncio.to_thread) ----

    def _load(self, path: Path) -> list[FeedbackItem]:
        """Read one collection. Missing or corrupt files read as empty."""
        if not path.exists():
            return []
        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
            logger.warning("load_feedback -> unreadable %s, treating as empty: %s", path, exc)
            return []
        if not isinstance(parsed, dict) or not isinstance(parsed.get("items"), list):
            if parsed is not None:
                logger.warning("load_feedback -> %s has no items list, treating as empty", path)
            return []
        items = [item_from_record(raw) for raw in parsed["items"]]
        return [item for item in items if item is not None]

    def _load_active(self) -> list[FeedbackItem]:
        """Read the active collection, seeding it once from the legacy file."""
        if not self.active_path.exists() and self.legacy_path.exists():
            try:
                self.scrutiny_dir.mkdir(parents=True, exist_ok=True)
                self.active_path.write_text(
                    self.legacy_path.read_text(encoding="utf-8"), encoding="utf-8"
                )
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("migrate_legacy -> copy failed, reading legacy directly: %s", exc)
                return self._load(self.legacy_path)
            logger.info("migrate_legacy -> seeded %s from %s", ACTIVE_FILENAME, LEGACY_UNSENT_FILENAME)
        return self._load(self.active_path)

    def _dump(self, path: Path, items: list[FeedbackItem]) -> None:
        """Atomically rewrite a collection file. Raises StorageIOError."""
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(_dump_yaml(sort_items(items)), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            with suppress(OSError):
                tmp_path.unlink()
            raise StorageIOError(f"Failed to write {path}: {exc}") from exc

    # ---- helpers ----

    @asynccontextmanager
    async def _locked(self, *names: str) -> AsyncIterator[None]:
        """Hold the per-file locks for *names*, always acquired in the same order."""
        ordered = [name for name in _LOCK_ORDER if name in names]
        acquired: list[asyncio.Lock] = []
        try:
            for name in ordered:
                lock = self._locks[name]
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def _prepare(self, raw: ItemLike) -> FeedbackItem:
        """Validate an incoming item and confine its path to the root."""
        if isinstance(raw, FeedbackItem):
            item = raw
        else:
            try:
                item = FeedbackItem.model_validate(raw)
            except pydantic.ValidationError as exc:
                raise ValidationError(f"Invalid feedback item: {exc}") from exc
        item = normalize_item(item)
        problem = check_relative_path(item.file_path, self.root)
        if problem is not None:
            raise ValidationError(f"{problem}: {item.file_path}")
        return item.model_copy(update={"file_path": normalize_relative_path(item.file_path)})

    @staticmethod
    def _key_of(target: KeyLike) -> ItemKey:
        if isinstance(target, FeedbackItem):
            return target.key
        if isinstance(target, ItemKey):
            return target
        if isinstance(target, dict):
            return key_from_payload(target)
        raise ValidationError(f"Unsupported feedback key: {target!r}")

    # ---- reads ----

    async def list_active(self) -> list[FeedbackItem]:
        """All draft and submitted items."""
        async with self._locked(_ACTIVE):
            return await asyncio.to_thread(self._load_active)

    async def list_resolved(self) -> list[FeedbackItem]:
        """All resolved items."""
        async with self._locked(_RESOLVED):
            return await asyncio.to_thread(self._load, self.resolved_path)

    # ---- mutations ----

    async def upsert(self, items: ItemLike | list[ItemLike]) -> list[FeedbackItem]:
        """Merge one or many items into the active collection as drafts.

        An item replaces the active item with the same identity key and any
        item anchored on the same starting line, so widening a comment's range
        edits it in place. Editing a submitted item reopens it as a draft.
        Returns the merged active collection.
        """
        raw_items = items if isinstance(items, list) else [items]
        incoming = [with_state(self._prepare(raw), Draft()) for raw in raw_items]
        if not incoming:
            raise ValidationError("No feedback items given")

        async with self._locked(_ACTIVE, _RESOLVED):
            active = await asyncio.to_thread(self._load_active)
            resolved = await asyncio.to_thread(self._load, self.resolved_path)

            by_key: dict[ItemKey, FeedbackItem] = {item.key: item for item in active}
            for item in incoming:
                for key, existing in list(by_key.items()):
                    if key != item.key and existing.anchor == item.anchor:
                        del by_key[key]
                previous = by_key.get(item.key)
                if previous is not None and previous.submitted_at:
                    validate_transition(FeedbackStatus.SUBMITTED, FeedbackStatus.DRAFT)
                    logger.info("upsert_feedback -> %s reopened as draft", item.key.describe())
                by_key[item.key] = item

            merged = sort_items(list(by_key.values()))
            remaining_resolved = [item for item in resolved if item.key not in by_key]
            await asyncio.to_thread(self._dump, self.active_path, merged)
            if len(remaining_resolved) != len(resolved):
                await asyncio.to_thread(self._dump, self.resolved_path, remaining_resolved)

        logger.info(
            "upsert_feedback -> %s item(s) written, active=%s",
            len(incoming),
            len(merged),
            extra=self._log_extra,
        )
        return merged

    async def replace_active(self, items: list[ItemLike]) -> list[FeedbackItem]:
        """Bulk-replace the active collection. An empty list clears it."""
        prepared: dict[ItemKey, FeedbackItem] = {}
        for raw in items:
            item = self._prepare(raw)
            prepared[item.key] = item.model_copy(update={"resolved_at": None})

        async with self._locked(_ACTIVE, _RESOLVED):
            resolved = await asyncio.to_thread(self._load, self.resolved_path)
            merged = sort_items(list(prepared.values()))
            remaining_resolved = [item for item in resolved if item.key not in prepared]
            await asyncio.to_thread(self._dump, self.active_path, merged)
            if len(remaining_resolved) != len(resolved):
                await asyncio.to_thread(self._dump, self.resolved_path, remaining_resolved)

        logger.info("replace_active -> active=%s", len(merged), extra=self._log_extra)
        return merged

    async def resolve(self, target: KeyLike) -> FeedbackItem:
        """Move an item from the active to the resolved collection."""
        key = self._key_of(target)
        async with self._locked(_ACTIVE, _RESOLVED):
            active = await asyncio.to_thread(self._load_active)
            match = next((item for item in active if item.key == key), None)
            if match is None:
                raise NotFoundError(f"No active feedback at {key.describe()}")
            validate_transition(_active_status(match), FeedbackStatus.RESOLVED)

            stamped = match if match.resolved_at else with_state(match, Resolved(utc_timestamp()))
            resolved = await asyncio.to_thread(self._load, self.resolved_path)
            next_resolved = [item for item in resolved if item.key != key] + [stamped]
            next_active = [item for item in active if item.key != key]
            # Resolved first: a failure in between leaves a duplicate, never a loss.
            await asyncio.to_thread(self._dump, self.resolved_path, next_resolved)
            await asyncio.to_thread(self._dump, self.active_path, next_active)

        logger.info("resolve_feedback -> %s", key.describe(), extra=self._log_extra)
        return stamped

    async def unresolve(self, target: KeyLike) -> FeedbackItem:
        """Move an item back from the resolved collection as a draft."""
        key = self._key_of(target)
        async with self._locked(_ACTIVE, _RESOLVED):
            resolved = await asyncio.to_thread(self._load, self.resolved_path)
            match = next((item for item in resolved if item.key == key), None)
            if match is None:
                raise NotFoundError(f"No resolved feedback at {key.describe()}")
            validate_transition(FeedbackStatus.RESOLVED, FeedbackStatus.DRAFT)

            restored = with_state(match, Draft())
            active = await asyncio.to_thread(self._load_active)
            next_active = [item for item in active if item.key != key] + [restored]
            next_resolved = [item for item in resolved if item.key != key]
            await asyncio.to_thread(self._dump, self.active_path, next_active)
            await asyncio.to_thread(self._dump, self.resolved_path, next_resolved)

        logger.info("unresolve_feedback -> %s", key.describe(), extra=self._log_extra)
        return restored

    async def delete(self, target: KeyLike) -> FeedbackItem:
        """Hard-delete a draft or resolved item. Submitted items must be resolved first."""
        key = self._key_of(target)
        async with self._locked(_ACTIVE, _RESOLVED):
            active = await asyncio.to_thread(self._load_active)
            match = next((item for item in active if item.key == key), None)
            if match is not None:
                validate_delete(_active_status(match))
                remaining = [item for item in active if item.key != key]
                await asyncio.to_thread(self._dump, self.active_path, remaining)
                logger.info("delete_feedback -> %s (active)", key.describe(), extra=self._log_extra)
                return match

            resolved = await asyncio.to_thread(self._load, self.resolved_path)
            match = next((item for item in resolved if item.key == key), None)
            if match is None:
                raise NotFoundError(f"No feedback at {key.describe()}")
            remaining = [item for item in resolved if item.key != key]
            await asyncio.to_thread(self._dump, self.resolved_path, remaining)

        logger.info("delete_feedback -> %s (resolved)", key.describe(), extra=self._log_extra)
        return match

    async def submit_all(self) -> list[FeedbackItem]:
        """Stamp submitted_at on every draft and return the whole active set.

        Items that already carry submitted_at keep it, so re-submitting is
        idempotent. Submitted items stay in the active collection.
        """
        async with self._locked(_ACTIVE):
            active = await asyncio.to_thread(self._load_active)
            submitted_at = utc_timestamp()
            stamped: list[FeedbackItem] = []
            newly_submitted = 0
            for item in active:
                if item.submitted_at:
                    stamped.append(item)
                    continue
                validate_transition(FeedbackStatus.DRAFT, FeedbackStatus.SUBMITTED)
                stamped.append(with_state(item, Submitted(submitted_at)))
                newly_submitted += 1
            if newly_submitted:
                await asyncio.to_thread(self._dump, self.active_path, stamped)

        logger.info(
            "submit_feedback -> newly_submitted=%s total=%s",
            newly_submitted,
            len(stamped),
            extra=self._log_extra,
        )
        return sort_items(stamped)

    # ---- agent hand-off ----

    def _write_handoff_file(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("x", encoding="utf-8") as fh:
                fh.write(content)
        except FileExistsError as exc:
            raise StorageIOError(f"Hand-off file already exists: {path}") from exc
        except OSError as exc:
            raise StorageIOError(f"Failed to write {path}: {exc}") from exc

    async def write_handoff(
        self,
        items: list[FeedbackItem],
        destination_id: str | None = None,
        *,
        absolute_paths: bool = False,
    ) -> Path:
        """Write an agent-readable snapshot of *items* under a unique name.

        Never mutates the store's own collections. With *absolute_paths*,
        each file_path is rewritten relative to the root into an absolute
        path so the agent can open it from any working directory.
        """
        destination_id = destination_id or str(uuid.uuid4())
        if not _DESTINATION_ID_RE.match(destination_id):
            raise ValidationError(f"Invalid hand-off id: {destination_id!r}")

        snapshot = sort_items(items)
        if absolute_paths:
            snapshot = [
                item.model_copy(update={"file_path": str(self.root / item.file_path)})
                for item in snapshot
            ]
        path = self.scrutiny_dir / HANDOFF_FILENAME_TEMPLATE.format(destination_id=destination_id)
        await asyncio.to_thread(self._write_handoff_file, path, _dump_yaml(snapshot))
        logger.info(
            "write_handoff -> %s (%s items)", path.name, len(snapshot), extra=self._log_extra
        )
        return path
