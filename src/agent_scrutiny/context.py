"""Application context and lifespan for the agent-scrutiny server."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

from fastmcp import FastMCP

from agent_scrutiny.config_schema import ScrutinyConfig, load_config
from agent_scrutiny.store import FeedbackStore
from agent_scrutiny.watcher import WatchRegistry

PROJECT_ROOT_ENV_VAR = "SCRUTINY_PROJECT_ROOT"
logger = logging.getLogger("agent_scrutiny")


@dataclass
class AppContext:
    """Process-wide state: configuration, the watch registry and one store per target."""

    config: ScrutinyConfig
    registry: WatchRegistry = field(default_factory=WatchRegistry)
    _stores: dict[Path, FeedbackStore] = field(default_factory=dict)

    def resolve_target(self, target: str | None) -> str:
        """Known target names pass through; anything else maps to the default target."""
        if self.config.has_target(target):
            return target  # type: ignore[return-value]
        return self.config.default_target()

    def target_dir(self, target: str | None) -> Path:
        return self.config.target_dir_for(self.resolve_target(target))

    def store_for(self, target: str | None) -> FeedbackStore:
        """Return the store for a target, one instance per directory so writes share locks."""
        directory = self.target_dir(target)
        store = self._stores.get(directory)
        if store is None:
            store = FeedbackStore(directory)
            self._stores[directory] = store
        return store


# Module-level AppContext, set by scrutiny_lifespan via set_app_context().
_app_ctx: AppContext | None = None


def set_app_context(ctx: AppContext | None) -> None:
    """Store the AppContext for HTTP route handlers to access."""
    global _app_ctx
    _app_ctx = ctx


def get_app_context() -> AppContext | None:
    return _app_ctx


def resolve_project_root() -> Path:
    override = os.environ.get(PROJECT_ROOT_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


@asynccontextmanager
async def scrutiny_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Load configuration at startup and close every watcher on shutdown."""
    del server
    project_root = resolve_project_root()
    config = load_config(project_root)
    ctx = AppContext(config=config)
    set_app_context(ctx)
    logger.info(
        "Scrutiny ready - project=%s targets=%s default_dir=%s",
        project_root,
        ",".join(config.target_names()),
        ctx.target_dir(None),
    )
    try:
        yield ctx
    finally:
        ctx.registry.close_all()
        set_app_context(None)
