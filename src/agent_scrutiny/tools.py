"""MCP tool definitions letting the coding agent read and resolve review feedback."""

from __future__ import annotations

import logging

from fastmcp import Context

from agent_scrutiny.context import AppContext, get_app_context
from agent_scrutiny.errors import ScrutinyError
from agent_scrutiny.server import caller_tag, mcp

logger = logging.getLogger("agent_scrutiny")


def mcp_tool(*args, **kwargs):
    """FastMCP tool decorator with legacy `.fn` compatibility for tests/internal calls."""
    raw_tool = mcp.tool

    # Bare decorator usage: @mcp_tool
    if args and callable(args[0]) and len(args) == 1 and not kwargs:
        fn = args[0]
        registered = raw_tool(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    decorator = raw_tool(*args, **kwargs)

    def _decorate(fn):
        registered = decorator(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    return _decorate


def _app_ctx(ctx: Context | None) -> AppContext:
    """Resolve the AppContext from a FastMCP Context, falling back to the process context."""
    if ctx is not None:
        if hasattr(ctx, "lifespan_context"):
            return ctx.lifespan_context
        rc = getattr(ctx, "request_context", None)
        if rc is not None and hasattr(rc, "lifespan_context"):
            return rc.lifespan_context
        fm = getattr(ctx, "fastmcp", None)
        if fm is not None and hasattr(fm, "_lifespan_result"):
            return fm._lifespan_result
    app = get_app_context()
    if app is None:
        raise RuntimeError("Unable to resolve scrutiny lifespan context")
    return app


@mcp_tool
async def list_feedback(target: str | None = None, ctx: Context = None) -> dict:
    """List the review feedback currently waiting for the agent.

    Returns active items (drafts and submitted) with each item's status.
    Paths are relative to the target directory.
    """
    caller_tag.set("agent")
    app = _app_ctx(ctx)
    store = app.store_for(target)
    try:
        items = await store.list_active()
    except ScrutinyError as exc:
        logger.info(
            "list_feedback -> failed: %s", exc, extra={"target": app.resolve_target(target)}
        )
        return {"error": str(exc)}
    return {
        "target": app.resolve_target(target),
        "items": [
            {**item.to_record(), "status": str(item.state.status)}
            for item in items
        ],
    }


@mcp_tool
async def resolve_feedback(
    file_path: str,
    line_number: int,
    line_number_end: int | None = None,
    target: str | None = None,
    ctx: Context = None,
) -> dict:
    """Mark one feedback item as addressed, moving it to the resolved collection.

    Identify the item by its file_path and line range exactly as listed by
    list_feedback (line_number 0 means whole-file feedback).
    """
    caller_tag.set("agent")
    app = _app_ctx(ctx)
    store = app.store_for(target)
    key = {"file_path": file_path, "line_number": line_number, "line_number_end": line_number_end}
    try:
        item = await store.resolve(key)
    except ScrutinyError as exc:
        logger.info(
            "resolve_feedback -> rejected: %s", exc, extra={"target": app.resolve_target(target)}
        )
        return {"error": str(exc)}
    return {"ok": True, "item": item.to_record()}
