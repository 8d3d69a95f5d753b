"""Reference-counted directory watchers with per-path debounced fan-out.

One native watcher runs per canonical root no matter how many subscribers
listen to it. Raw filesystem events are coalesced per (root, path): every
new raw event for a path restarts that path's debounce timer, and only once
the path has been quiet for the debounce window is a single ChangeEvent
delivered to every subscriber of the root.

All bookkeeping happens on the event loop thread; the registry is not safe
to use from other threads.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Protocol

from watchfiles import Change, DefaultFilter
from watchfiles._rust_notify import RustNotify

from agent_scrutiny.errors import WatcherError

logger = logging.getLogger("agent_scrutiny")

DEBOUNCE_SECONDS: float = 0.3

SKIP_DIRS: frozenset[str] = frozenset(
    {
        ".git",
        "node_modules",
        ".next",
        "__pycache__",
        ".venv",
        "venv",
        ".cache",
        "dist",
        "build",
        ".turbo",
    }
)


class ChangeKind(StrEnum):
    ADD = "add"
    CHANGE = "change"
    UNLINK = "unlink"
    ADD_DIR = "addDir"
    UNLINK_DIR = "unlinkDir"


@dataclass(frozen=True)
class ChangeEvent:
    """A settled change: the last raw event kind and the path relative to the root."""

    kind: ChangeKind
    path: str


ChangeCallback = Callable[[ChangeEvent], None]
ErrorCallback = Callable[[WatcherError], None]
RawEventHandler = Callable[[ChangeKind, str], None]
FailureHandler = Callable[[BaseException], None]


class NativeWatcher(Protocol):
    def start(self) -> None: ...

    def close(self) -> None: ...


WatcherFactory = Callable[[Path, RawEventHandler, FailureHandler], NativeWatcher]


class WatchfilesWatcher:
    """Recursive watcher over one root, backed by watchfiles' RustNotify.

    The native handle is opened in start(), so a root that cannot be
    watched fails there and not later inside the polling task. A crash of
    the polling task is reported through *on_failure*.

    Directory removals are only reported as ``unlinkDir`` for directories
    that were created while the watcher was running; older directories are
    reported as ``unlink``.
    """

    debounce_ms = 50
    step_ms = 25
    timeout_ms = 5_000

    def __init__(
        self,
        root: Path,
        on_event: RawEventHandler,
        on_failure: FailureHandler,
        *,
        skip_dirs: frozenset[str] = SKIP_DIRS,
    ) -> None:
        self.root = root
        self._on_event = on_event
        self._on_failure = on_failure
        self._filter = DefaultFilter(
            ignore_dirs=tuple(sorted(set(DefaultFilter.ignore_dirs) | skip_dirs))
        )
        self._notify: RustNotify | None = None
        self._stop_event = threading.Event()
        self._task: asyncio.Task | None = None
        self._known_dirs: set[str] = set()

    def start(self) -> None:
        """Open the native watch handle. Raises if the root cannot be watched."""
        loop = asyncio.get_running_loop()
        self._notify = RustNotify([str(self.root)], False, False, 300, True, False)
        self._task = loop.create_task(self._run(self._notify), name=f"watch:{self.root}")

    def _classify(self, change: Change, path: str) -> ChangeKind | None:
        if change == Change.added:
            if os.path.isdir(path):
                self._known_dirs.add(path)
                return ChangeKind.ADD_DIR
            return ChangeKind.ADD
        if change == Change.deleted:
            if path in self._known_dirs:
                self._known_dirs.discard(path)
                return ChangeKind.UNLINK_DIR
            return ChangeKind.UNLINK
        if os.path.isdir(path):
            return None
        return ChangeKind.CHANGE

    def _deliver(self, raw_changes: set[tuple[int, str]]) -> None:
        for raw_change, path in raw_changes:
            change = Change(raw_change)
            if not self._filter(change, path):
                continue
            kind = self._classify(change, path)
            if kind is not None:
                self._on_event(kind, path)

    async def _run(self, notify: RustNotify) -> None:
        try:
            while not self._stop_event.is_set():
                raw_changes = await asyncio.to_thread(
                    notify.watch, self.debounce_ms, self.step_ms, self.timeout_ms, self._stop_event
                )
                if raw_changes in ("stop", "signal"):
                    break
                if raw_changes == "timeout":
                    continue
                self._deliver(raw_changes)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "watch -> watcher for %s stopped unexpectedly",
                self.root,
                extra={"root": str(self.root)},
            )
            notify.close()
            self._on_failure(exc)
            return
        notify.close()

    def close(self) -> None:
        # The polling thread notices the stop event within one step and
        # closes the native handle itself.
        self._stop_event.set()


@dataclass
class _WatchEntry:
    root: Path
    watcher: NativeWatcher | None = None
    subscribers: dict[int, ChangeCallback] = field(default_factory=dict)
    error_handlers: dict[int, ErrorCallback] = field(default_factory=dict)


class WatchRegistry:
    """Owns one native watcher per watched root and its subscriber set.

    Usage:
        registry = WatchRegistry()
        unsubscribe = registry.subscribe("/repo", on_change, on_error)
        ...
        unsubscribe()  # closes the watcher once the last subscriber leaves

    If a running watcher dies, its entry is dropped, every subscriber's
    *on_error* receives a WatcherError, and the next subscribe for that
    root starts a fresh watcher.
    """

    def __init__(
        self,
        *,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        watcher_factory: WatcherFactory | None = None,
    ) -> None:
        self._debounce_seconds = debounce_seconds
        self._watcher_factory: WatcherFactory = watcher_factory or WatchfilesWatcher
        self._entries: dict[Path, _WatchEntry] = {}
        self._timers: dict[tuple[Path, str], asyncio.TimerHandle] = {}
        self._tokens = itertools.count(1)

    # ---- introspection ----

    def watcher_count(self) -> int:
        return len(self._entries)

    def subscriber_count(self, root: str | Path) -> int:
        entry = self._entries.get(Path(root).expanduser().resolve())
        return len(entry.subscribers) if entry is not None else 0

    def pending_count(self, root: str | Path) -> int:
        canonical = Path(root).expanduser().resolve()
        return sum(1 for timer_root, _ in self._timers if timer_root == canonical)

    # ---- subscription lifecycle ----

    def subscribe(
        self,
        root: str | Path,
        callback: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        """Register *callback* for changes under *root*.

        Raises WatcherError if the root is not a directory or its watcher
        cannot start. Returns an idempotent unsubscribe function.
        """
        canonical = Path(root).expanduser().resolve()
        entry = self._entries.get(canonical)
        if entry is None:
            entry = self._create_entry(canonical)
            self._entries[canonical] = entry

        token = next(self._tokens)
        entry.subscribers[token] = callback
        if on_error is not None:
            entry.error_handlers[token] = on_error
        logger.info(
            "watch -> subscribed %s (subscribers=%s)",
            canonical,
            len(entry.subscribers),
            extra={"root": str(canonical)},
        )

        unsubscribed = False

        def unsubscribe() -> None:
            nonlocal unsubscribed
            if unsubscribed:
                return
            unsubscribed = True
            self._unsubscribe(entry, token)

        return unsubscribe

    def _create_entry(self, root: Path) -> _WatchEntry:
        if not root.is_dir():
            raise WatcherError(f"Watch root is not a directory: {root}")
        entry = _WatchEntry(root=root)

        def on_raw_event(kind: ChangeKind, path: str) -> None:
            self._on_raw_event(entry, kind, path)

        def on_failure(exc: BaseException) -> None:
            self._on_watcher_failure(entry, exc)

        try:
            watcher = self._watcher_factory(root, on_raw_event, on_failure)
            watcher.start()
        except Exception as exc:
            raise WatcherError(f"Failed to start watcher for {root}: {exc}") from exc
        entry.watcher = watcher
        logger.info("watch -> started watcher for %s", root, extra={"root": str(root)})
        return entry

    def _unsubscribe(self, entry: _WatchEntry, token: int) -> None:
        if token not in entry.subscribers:
            return
        entry.subscribers.pop(token)
        entry.error_handlers.pop(token, None)
        if entry.subscribers:
            logger.info(
                "watch -> unsubscribed %s (subscribers=%s)",
                entry.root,
                len(entry.subscribers),
                extra={"root": str(entry.root)},
            )
            return
        self._teardown(entry)

    def _teardown(self, entry: _WatchEntry) -> None:
        if self._entries.get(entry.root) is entry:
            del self._entries[entry.root]
        for timer_key in [key for key in self._timers if key[0] == entry.root]:
            self._timers.pop(timer_key).cancel()
        try:
            if entry.watcher is not None:
                entry.watcher.close()
        except Exception:
            logger.exception("watch -> failed to close watcher for %s", entry.root)
        logger.info("watch -> closed watcher for %s", entry.root, extra={"root": str(entry.root)})

    def _on_watcher_failure(self, entry: _WatchEntry, exc: BaseException) -> None:
        if self._entries.get(entry.root) is not entry:
            return
        handlers = list(entry.error_handlers.values())
        entry.subscribers.clear()
        entry.error_handlers.clear()
        self._teardown(entry)
        error = WatcherError(f"Watcher for {entry.root} stopped: {exc}")
        for handler in handlers:
            try:
                handler(error)
            except Exception:
                logger.exception("watch -> error handler failed for %s", entry.root)

    def close_all(self) -> None:
        """Tear down every watcher, e.g. at server shutdown."""
        for entry in list(self._entries.values()):
            entry.subscribers.clear()
            entry.error_handlers.clear()
            self._teardown(entry)

    # ---- debounced dispatch ----

    def _on_raw_event(self, entry: _WatchEntry, kind: ChangeKind, path: str) -> None:
        if self._entries.get(entry.root) is not entry:
            return
        timer_key = (entry.root, path)
        existing = self._timers.pop(timer_key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[timer_key] = loop.call_later(
            self._debounce_seconds, self._dispatch, entry, timer_key, kind, path
        )

    def _dispatch(
        self,
        entry: _WatchEntry,
        timer_key: tuple[Path, str],
        kind: ChangeKind,
        path: str,
    ) -> None:
        self._timers.pop(timer_key, None)
        if self._entries.get(entry.root) is not entry:
            return
        try:
            relative = Path(path).relative_to(entry.root).as_posix()
        except ValueError:
            relative = Path(os.path.relpath(path, entry.root)).as_posix()
        event = ChangeEvent(kind=kind, path=relative)
        for callback in list(entry.subscribers.values()):
            try:
                callback(event)
            except Exception:
                logger.exception("watch -> subscriber failed for %s %s", kind, relative)
