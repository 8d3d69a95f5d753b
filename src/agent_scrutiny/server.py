"""FastMCP server entry point for agent-scrutiny."""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastmcp import FastMCP

from agent_scrutiny.context import scrutiny_lifespan

USER_CONFIG_DIRNAME = "agent-scrutiny"
LOG_DIR_ENV_VAR = "SCRUTINY_LOG_DIR"
LOG_MAX_BYTES_ENV_VAR = "SCRUTINY_LOG_MAX_BYTES"
LOG_BACKUPS_ENV_VAR = "SCRUTINY_LOG_BACKUPS"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUPS = 5
DEFAULT_PORT = 3000

mcp = FastMCP(
    "agent-scrutiny",
    instructions=(
        "Review feedback for a working-tree diff. "
        "List the comments left by the reviewer and mark each one resolved once addressed."
    ),
    lifespan=scrutiny_lifespan,
)

# ContextVar holding the caller identity for log lines.
# Default "scrutiny" is used for internal/system actions.
caller_tag: contextvars.ContextVar[str] = contextvars.ContextVar("caller_tag", default="scrutiny")

# Import tools to register them with @mcp.tool.
# This import MUST come AFTER mcp is created to avoid circular imports.
from agent_scrutiny import tools  # noqa: F401, E402
from agent_scrutiny.routes import register_routes  # noqa: E402

register_routes(mcp)


class _CallerFormatter(logging.Formatter):
    """Log formatter that injects the caller_tag ContextVar into each record."""

    def format(self, record: logging.LogRecord) -> str:
        record.caller_tag = caller_tag.get("scrutiny")  # type: ignore[attr-defined]
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """Structured JSON formatter for logfile events.

    ``target`` and ``root`` passed through ``extra=`` become top-level keys so
    log lines can be filtered per review target or watched tree.
    """

    context_fields = ("target", "root")

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "caller_tag": getattr(record, "caller_tag", caller_tag.get("scrutiny")),
            "message": record.getMessage(),
        }
        for name in self.context_fields:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


def _default_user_config_dir() -> Path:
    """Resolve a cross-platform user config directory for scrutiny state."""
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home).expanduser() / USER_CONFIG_DIRNAME

    if os.name == "nt":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata).expanduser() / USER_CONFIG_DIRNAME
        return Path.home() / "AppData" / "Roaming" / USER_CONFIG_DIRNAME

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / USER_CONFIG_DIRNAME

    return Path.home() / ".config" / USER_CONFIG_DIRNAME


def _resolve_log_dir() -> Path:
    override = os.environ.get(LOG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return _default_user_config_dir() / "logs"


def _read_positive_int_env(name: str, default: int, minimum: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


class _KeepaliveNoiseFilter(logging.Filter):
    """Hide per-connection stream chatter at INFO from the console unless verbose."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno > logging.INFO:
            return True
        return not record.getMessage().startswith("watch_stream -> ")


def _configure_logging(verbose: bool | None = None) -> None:
    """Configure concise console logs and a structured rotating logfile."""
    if verbose is None:
        verbose = os.environ.get("SCRUTINY_VERBOSE", "").strip().lower() in {"1", "true", "yes"}
    logger = logging.getLogger("agent_scrutiny")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    has_stream_handler = any(
        getattr(handler, "_scrutiny_stream_handler", False)
        for handler in logger.handlers
    )
    if not has_stream_handler:
        handler = logging.StreamHandler()
        handler._scrutiny_stream_handler = True  # type: ignore[attr-defined]
        handler.setLevel(logging.INFO)
        handler.setFormatter(
            _CallerFormatter(
                "%(asctime)s [%(caller_tag)s] %(message)s",
                "%H:%M:%S",
            )
        )
        if not verbose:
            handler.addFilter(_KeepaliveNoiseFilter())
        logger.addHandler(handler)

    if not any(getattr(handler, "_scrutiny_file_handler", False) for handler in logger.handlers):
        log_dir = _resolve_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_max_bytes = _read_positive_int_env(
            LOG_MAX_BYTES_ENV_VAR,
            DEFAULT_LOG_MAX_BYTES,
            1024,
        )
        log_backups = _read_positive_int_env(
            LOG_BACKUPS_ENV_VAR,
            DEFAULT_LOG_BACKUPS,
            1,
        )
        file_handler = RotatingFileHandler(
            log_dir / "scrutiny.jsonl",
            maxBytes=log_max_bytes,
            backupCount=log_backups,
            encoding="utf-8",
        )
        file_handler._scrutiny_file_handler = True  # type: ignore[attr-defined]
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(_JsonFormatter())
        logger.addHandler(file_handler)


def main() -> None:
    """Run the review server.

    Binds to 127.0.0.1:3000 by default; set SCRUTINY_HOST / SCRUTINY_PORT to
    override. The project root (where ``.ai/config.json`` lives) defaults to
    the current directory; set SCRUTINY_PROJECT_ROOT to override.
    """
    _configure_logging()
    host = os.environ.get("SCRUTINY_HOST", "127.0.0.1")
    port = _read_positive_int_env("SCRUTINY_PORT", DEFAULT_PORT, 1)
    uvicorn_log_level = os.environ.get("SCRUTINY_UVICORN_LOG_LEVEL", "warning")
    mcp.run(
        transport="streamable-http",
        host=host,
        port=port,
        log_level=uvicorn_log_level,
        stateless_http=True,
    )


if __name__ == "__main__":
    main()
