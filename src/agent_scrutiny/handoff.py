"""Wake the coding agent by typing an instruction into its tmux pane."""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import suppress

from agent_scrutiny.config_schema import ScrutinyConfig
from agent_scrutiny.errors import AgentHandoffError

logger = logging.getLogger("agent_scrutiny")

TMUX_TIMEOUT_SECONDS = 5.0
COMMIT_INSTRUCTION = "Please commit the current changes."


def sanitize_session_name(name: str) -> str:
    """Keep only characters tmux accepts in session names (same rule as the launcher script)."""
    sanitized = re.sub(r"[^a-zA-Z0-9_-]", "_", name)
    sanitized = re.sub(r"_+", "_", sanitized).strip("_")
    return sanitized or "default"


def agent_pane(config: ScrutinyConfig, target: str) -> str:
    """tmux target of the agent's first pane for a review target."""
    return f"{config.tmux_session}-agent-{sanitize_session_name(target)}:0.0"


def build_instruction(feedback_file: str) -> str:
    """Instruction pointing the agent at a hand-off snapshot (path relative to its cwd)."""
    return (
        f"Read {feedback_file} and address each review comment it lists "
        "at the given file and line."
    )


def one_line(text: str) -> str:
    # send-keys interprets newlines as Enter; collapse to a single line.
    return re.sub(r"\s+", " ", text).strip()


def build_send_keys_argv(pane: str, text: str) -> list[str]:
    """Build shell-free argv that types *text* literally into *pane*."""
    return ["tmux", "send-keys", "-t", pane, "-l", one_line(text)]


def build_enter_argv(pane: str) -> list[str]:
    return ["tmux", "send-keys", "-t", pane, "Enter"]


async def _run_tmux(argv: list[str], timeout: float) -> None:
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise AgentHandoffError(f"Failed to run tmux: {exc}") from exc

    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        with suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise AgentHandoffError(f"tmux timed out after {timeout:.0f}s") from exc

    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()
        raise AgentHandoffError(
            detail or f"tmux send-keys failed with status {proc.returncode}"
        )


async def send_to_agent(
    pane: str,
    text: str,
    *,
    timeout: float = TMUX_TIMEOUT_SECONDS,
) -> None:
    """Type *text* into the agent pane and press Enter. Raises AgentHandoffError."""
    await _run_tmux(build_send_keys_argv(pane, text), timeout)
    await _run_tmux(build_enter_argv(pane), timeout)
    logger.info("send_to_agent -> %s", pane)
