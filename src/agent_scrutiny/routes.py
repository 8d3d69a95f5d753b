"""HTTP routes for the review UI: feedback CRUD, submit/approve hand-off, and the SSE watch stream."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from urllib.parse import urlsplit

from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from agent_scrutiny.context import AppContext, get_app_context
from agent_scrutiny.errors import (
    AgentHandoffError,
    ConflictError,
    NotFoundError,
    ScrutinyError,
    StorageIOError,
    ValidationError,
    WatcherError,
)
from agent_scrutiny.handoff import COMMIT_INSTRUCTION, agent_pane, build_instruction, send_to_agent
from agent_scrutiny.models import FeedbackItem
from agent_scrutiny.notifications import ERROR_EVENT, ChangeStream, format_sse

logger = logging.getLogger("agent_scrutiny")

ALLOWED_HOSTS: frozenset[str] = frozenset({"localhost", "127.0.0.1"})

_TRANSITION_FLAGS = ("resolve", "unresolve", "delete")


def check_origin(request: Request) -> str | None:
    """Return an error message unless the request comes from a localhost origin.

    The Origin header is checked when present (cross-origin requests always
    send it); otherwise the Host header must name localhost.
    """
    origin = request.headers.get("origin")
    if origin:
        hostname = urlsplit(origin).hostname
        if hostname in ALLOWED_HOSTS:
            return None
        return f"Requests from origin {origin} are not allowed"

    host = request.headers.get("host")
    if host:
        hostname = urlsplit(f"//{host}").hostname
        if hostname in ALLOWED_HOSTS:
            return None
        return f"Requests for host {host} are not allowed"

    return "Origin or Host header is required"


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _error_for(exc: ScrutinyError) -> JSONResponse:
    if isinstance(exc, ValidationError):
        return _error(str(exc), 400)
    if isinstance(exc, NotFoundError):
        return _error(str(exc), 404)
    if isinstance(exc, ConflictError):
        return _error(str(exc), 409)
    if isinstance(exc, (StorageIOError, AgentHandoffError, WatcherError)):
        logger.error("request failed: %s", exc)
        return _error(str(exc), 500)
    logger.exception("unexpected scrutiny error")
    return _error(str(exc), 500)


def _records(items: list[FeedbackItem]) -> list[dict]:
    return [item.to_record() for item in items]


def _require_context() -> AppContext | JSONResponse:
    ctx = get_app_context()
    if ctx is None:
        return _error("Server not ready", 503)
    return ctx


async def _optional_json(request: Request) -> dict:
    """Parse a JSON object body, treating an empty or invalid body as {}."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


def register_routes(mcp: object) -> None:
    """Register the review UI's HTTP routes on the FastMCP server instance."""

    @mcp.custom_route("/api/targets", methods=["GET"])  # type: ignore[union-attr]
    async def targets_api(request: Request) -> Response:
        """List configured review targets."""
        ctx = _require_context()
        if isinstance(ctx, JSONResponse):
            return ctx
        return JSONResponse(
            {
                "targets": ctx.config.target_names(),
                "defaultTarget": ctx.config.default_target(),
            }
        )

    @mcp.custom_route("/api/feedback", methods=["GET"])  # type: ignore[union-attr]
    async def feedback_list_api(request: Request) -> Response:
        """Return active (draft + submitted) and resolved feedback for a target."""
        ctx = _require_context()
        if isinstance(ctx, JSONResponse):
            return ctx
        store = ctx.store_for(request.query_params.get("target"))
        active = await store.list_active()
        resolved = await store.list_resolved()
        return JSONResponse({"items": _records(active), "resolved": _records(resolved)})

    @mcp.custom_route("/api/feedback", methods=["POST"])  # type: ignore[union-attr]
    async def feedback_mutate_api(request: Request) -> Response:
        """Create/update feedback, or resolve/unresolve/delete it when flagged.

        Body shapes:
        - a single item ``{file_path, line_number, line_number_end?, whole_file?, comment}``
        - a batch ``{items: [...]}``
        - a key plus one of ``resolve: true``, ``unresolve: true``, ``delete: true``
        Every shape may carry ``target``.
        """
        ctx = _require_context()
        if isinstance(ctx, JSONResponse):
            return ctx
        origin_error = check_origin(request)
        if origin_error is not None:
            return _error(origin_error, 403)
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error("Request body must be JSON", 400)
        if not isinstance(body, dict):
            return _error("Request body must be a JSON object", 400)

        store = ctx.store_for(body.get("target"))
        try:
            if body.get("resolve") is True:
                item = await store.resolve(body)
                return JSONResponse({"ok": True, "item": item.to_record()})
            if body.get("unresolve") is True:
                item = await store.unresolve(body)
                return JSONResponse({"ok": True, "item": item.to_record()})
            if body.get("delete") is True:
                item = await store.delete(body)
                return JSONResponse({"ok": True, "item": item.to_record()})

            if "items" in body:
                items = body["items"]
                if not isinstance(items, list):
                    return _error("items must be an array", 400)
                if not items:
                    return _error("No valid feedback items given", 400)
                merged = await store.upsert(items)
            else:
                payload = {k: v for k, v in body.items() if k not in _TRANSITION_FLAGS}
                merged = await store.upsert(payload)
        except ScrutinyError as exc:
            return _error_for(exc)
        return JSONResponse({"items": _records(merged)})

    @mcp.custom_route("/api/submit", methods=["POST"])  # type: ignore[union-attr]
    async def submit_api(request: Request) -> Response:
        """Mark drafts submitted, write the hand-off snapshot and wake the agent."""
        ctx = _require_context()
        if isinstance(ctx, JSONResponse):
            return ctx
        origin_error = check_origin(request)
        if origin_error is not None:
            return _error(origin_error, 403)
        body = await _optional_json(request)
        target = ctx.resolve_target(body.get("target"))
        store = ctx.store_for(target)

        try:
            if not await store.list_active():
                return _error("There is no feedback to submit.", 400)
            snapshot = await store.submit_all()
            handoff_path = await store.write_handoff(snapshot, absolute_paths=True)
            relative = handoff_path.relative_to(store.root).as_posix()
            await send_to_agent(agent_pane(ctx.config, target), build_instruction(relative))
        except ScrutinyError as exc:
            return _error_for(exc)

        logger.info(
            "submit -> target=%s items=%s handoff=%s",
            target,
            len(snapshot),
            relative,
            extra={"target": target, "root": str(store.root)},
        )
        return JSONResponse({"ok": True, "message": "Sent to the agent", "handoff": relative})

    @mcp.custom_route("/api/approve", methods=["POST"])  # type: ignore[union-attr]
    async def approve_api(request: Request) -> Response:
        """Ask the agent to commit the reviewed changes."""
        ctx = _require_context()
        if isinstance(ctx, JSONResponse):
            return ctx
        origin_error = check_origin(request)
        if origin_error is not None:
            return _error(origin_error, 403)
        body = await _optional_json(request)
        target = ctx.resolve_target(body.get("target"))
        try:
            await send_to_agent(agent_pane(ctx.config, target), COMMIT_INSTRUCTION)
        except ScrutinyError as exc:
            return _error_for(exc)
        logger.info("approve -> target=%s", target, extra={"target": target})
        return JSONResponse({"ok": True, "message": "Asked the agent to commit"})

    @mcp.custom_route("/api/watch", methods=["GET"])  # type: ignore[union-attr]
    async def watch_api(request: Request) -> Response:
        """SSE endpoint pushing file-changed and keepalive events for a target's tree."""
        ctx = _require_context()
        if isinstance(ctx, JSONResponse):
            return ctx
        target = ctx.resolve_target(request.query_params.get("target"))
        root = ctx.target_dir(target)
        stream = ChangeStream(ctx.registry, root)

        async def event_stream() -> AsyncIterator[str]:
            log_extra = {"target": target, "root": str(root)}
            logger.info("watch_stream -> client connected (%s)", root, extra=log_extra)
            try:
                async for frame in stream.frames():
                    yield frame
            except WatcherError as exc:
                logger.warning("watch_stream -> subscribe failed: %s", exc, extra=log_extra)
                yield format_sse(ERROR_EVENT, {"message": str(exc)})
            except asyncio.CancelledError:
                logger.info("watch_stream -> client disconnected (%s)", root, extra=log_extra)
                return
            finally:
                stream.close()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache, no-transform",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
