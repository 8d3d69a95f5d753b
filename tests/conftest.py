"""Shared test fixtures for agent-scrutiny."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from agent_scrutiny.config_schema import ScrutinyConfig
from agent_scrutiny.context import AppContext, set_app_context
from agent_scrutiny.store import FeedbackStore
from agent_scrutiny.watcher import ChangeKind, FailureHandler, RawEventHandler, WatchRegistry


class FakeWatcher:
    """In-memory NativeWatcher; tests push raw events through emit()."""

    def __init__(self, root: Path, on_event: RawEventHandler, on_failure: FailureHandler) -> None:
        self.root = root
        self.on_event = on_event
        self.on_failure = on_failure
        self.started = False
        self.closed = 0

    def start(self) -> None:
        self.started = True

    def close(self) -> None:
        self.closed += 1

    def emit(self, kind: ChangeKind, relative: str) -> None:
        self.on_event(kind, str(self.root / relative))

    def fail(self, exc: BaseException) -> None:
        self.on_failure(exc)


@dataclass
class FakeWatcherFactory:
    """Records every watcher the registry creates."""

    created: list[FakeWatcher] = field(default_factory=list)

    def __call__(
        self, root: Path, on_event: RawEventHandler, on_failure: FailureHandler
    ) -> FakeWatcher:
        watcher = FakeWatcher(root, on_event, on_failure)
        self.created.append(watcher)
        return watcher


@dataclass
class _MockFastMCP:
    """Stands in for the FastMCP instance so ctx.fastmcp._lifespan_result works."""

    _lifespan_result: AppContext


@dataclass
class MockContext:
    """Minimal mock for fastmcp.Context that provides fastmcp._lifespan_result."""

    fastmcp: _MockFastMCP

    @property
    def lifespan_context(self) -> AppContext:
        return self.fastmcp._lifespan_result


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A small working tree to review."""
    root = tmp_path / "repo"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")
    (root / "README.md").write_text("# demo\n", encoding="utf-8")
    return root


@pytest.fixture
def store(repo: Path) -> FeedbackStore:
    return FeedbackStore(repo)


@pytest.fixture
def watcher_factory() -> FakeWatcherFactory:
    return FakeWatcherFactory()


@pytest.fixture
def registry(watcher_factory: FakeWatcherFactory) -> WatchRegistry:
    return WatchRegistry(debounce_seconds=0.05, watcher_factory=watcher_factory)


@pytest.fixture
def app_context(repo: Path, registry: WatchRegistry) -> Iterator[AppContext]:
    """AppContext over the repo fixture, installed as the process context."""
    config = ScrutinyConfig(project_root=str(repo.parent), target_dir=str(repo))
    app = AppContext(config=config, registry=registry)
    set_app_context(app)
    yield app
    registry.close_all()
    set_app_context(None)


@pytest.fixture
def ctx(app_context: AppContext) -> MockContext:
    return MockContext(fastmcp=_MockFastMCP(_lifespan_result=app_context))
