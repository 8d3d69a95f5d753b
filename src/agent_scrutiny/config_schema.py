"""Project configuration schema: review targets and agent session settings."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger("agent_scrutiny")

CONFIG_RELATIVE_PATH = Path(".ai") / "config.json"
CONFIG_PATH_ENV_VAR = "SCRUTINY_CONFIG_PATH"
TARGET_DIR_ENV_VAR = "AGENT_SCRUTINY_TARGET_DIR"
TMUX_SESSION_ENV_VAR = "AGENT_SCRUTINY_TMUX_SESSION"
DEFAULT_TMUX_SESSION = "scrutiny"
DEFAULT_TARGET_NAME = "default"


class ScrutinyConfig(BaseModel):
    """Validated ``.ai/config.json`` contents.

    Keys are camelCase on disk (``targetDir``, ``tmuxSession``,
    ``agentCommand``) and snake_case in Python.
    """

    model_config = ConfigDict(populate_by_name=True)

    project_root: str = Field(default="", exclude=True)
    target_dir: str = Field(default="", alias="targetDir")
    tmux_session: str = Field(default=DEFAULT_TMUX_SESSION, alias="tmuxSession")
    agent_command: str | None = Field(default=None, alias="agentCommand")
    targets: dict[str, str] = Field(default_factory=dict)

    @field_validator("target_dir", "tmux_session", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @field_validator("targets")
    @classmethod
    def _validate_targets(cls, value: dict[str, str]) -> dict[str, str]:
        for name, directory in value.items():
            if not name.strip():
                raise ValueError("target names must not be empty")
            if not directory.strip():
                raise ValueError(f"target {name!r} has an empty directory")
        return value

    def target_names(self) -> list[str]:
        """Configured target names, or the single implicit default target."""
        return list(self.targets) or [DEFAULT_TARGET_NAME]

    def default_target(self) -> str:
        return self.target_names()[0]

    def has_target(self, name: str | None) -> bool:
        return bool(name) and name in self.targets

    def target_dir_for(self, name: str | None = None) -> Path:
        """Resolve a target name to an absolute directory.

        Unknown or missing names fall back to the default target directory.
        Relative directories resolve against the project root.
        """
        base = Path(self.project_root or Path.cwd())
        raw = self.targets.get(name) if name else None
        if raw is None:
            raw = self.target_dir or str(base)
        directory = Path(raw).expanduser()
        if not directory.is_absolute():
            directory = base / directory
        return directory.resolve()


def resolve_config_path(project_root: str | Path) -> Path:
    override = os.environ.get(CONFIG_PATH_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path(project_root) / CONFIG_RELATIVE_PATH


def load_config(project_root: str | Path | None = None) -> ScrutinyConfig:
    """Load project configuration, falling back to defaults.

    Resolution order for the default target directory is config file, then
    ``AGENT_SCRUTINY_TARGET_DIR``, then the project root; for the tmux
    session it is config file, then ``AGENT_SCRUTINY_TMUX_SESSION``, then
    ``"scrutiny"``. A missing, malformed or invalid config file yields the
    defaults (the failure is logged).
    """
    root = Path(project_root) if project_root is not None else Path.cwd()
    config_path = resolve_config_path(root)

    payload: dict = {}
    try:
        loaded = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        loaded = {}
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("load_config -> unreadable %s, using defaults: %s", config_path, exc)
        loaded = {}
    if isinstance(loaded, dict):
        payload = loaded

    try:
        config = ScrutinyConfig.model_validate(payload)
    except ValueError as exc:
        logger.warning("load_config -> invalid %s, using defaults: %s", config_path, exc)
        config = ScrutinyConfig()

    target_dir = config.target_dir or os.environ.get(TARGET_DIR_ENV_VAR, "").strip() or str(root)
    tmux_session = (
        payload.get("tmuxSession", "").strip()
        if isinstance(payload.get("tmuxSession"), str)
        else ""
    ) or os.environ.get(TMUX_SESSION_ENV_VAR, "").strip() or DEFAULT_TMUX_SESSION

    return config.model_copy(
        update={
            "project_root": str(root.resolve()),
            "target_dir": target_dir,
            "tmux_session": tmux_session,
        }
    )
