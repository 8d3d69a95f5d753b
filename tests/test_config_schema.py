"""Tests for project configuration loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from agent_scrutiny.config_schema import (
    CONFIG_PATH_ENV_VAR,
    TARGET_DIR_ENV_VAR,
    TMUX_SESSION_ENV_VAR,
    ScrutinyConfig,
    load_config,
)


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (CONFIG_PATH_ENV_VAR, TARGET_DIR_ENV_VAR, TMUX_SESSION_ENV_VAR):
        monkeypatch.delenv(name, raising=False)


def _write_config(root: Path, payload: object) -> Path:
    path = root / ".ai" / "config.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = load_config(tmp_path)
    assert config.tmux_session == "scrutiny"
    assert config.target_names() == ["default"]
    assert config.target_dir_for(None) == tmp_path.resolve()


def test_camel_case_keys(tmp_path: Path) -> None:
    (tmp_path / "app").mkdir()
    _write_config(
        tmp_path,
        {"targetDir": "app", "tmuxSession": "review", "agentCommand": "claude"},
    )
    config = load_config(tmp_path)
    assert config.tmux_session == "review"
    assert config.agent_command == "claude"
    assert config.target_dir_for(None) == (tmp_path / "app").resolve()


def test_named_targets(tmp_path: Path) -> None:
    _write_config(tmp_path, {"targets": {"web": "packages/web", "api": "/srv/api"}})
    config = load_config(tmp_path)
    assert config.target_names() == ["web", "api"]
    assert config.default_target() == "web"
    assert config.has_target("api")
    assert not config.has_target("nope")
    assert config.target_dir_for("web") == (tmp_path / "packages" / "web").resolve()
    assert config.target_dir_for("api") == Path("/srv/api").resolve()


def test_unknown_target_falls_back_to_default_dir(tmp_path: Path) -> None:
    _write_config(tmp_path, {"targets": {"web": "web"}})
    config = load_config(tmp_path)
    assert config.target_dir_for("nope") == tmp_path.resolve()


def test_env_fallbacks(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(TARGET_DIR_ENV_VAR, str(tmp_path / "elsewhere"))
    monkeypatch.setenv(TMUX_SESSION_ENV_VAR, "from-env")
    config = load_config(tmp_path)
    assert config.tmux_session == "from-env"
    assert config.target_dir_for(None) == (tmp_path / "elsewhere").resolve()


def test_config_file_beats_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(TMUX_SESSION_ENV_VAR, "from-env")
    _write_config(tmp_path, {"tmuxSession": "from-file"})
    assert load_config(tmp_path).tmux_session == "from-file"


def test_config_path_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    custom = tmp_path / "custom.json"
    custom.write_text(json.dumps({"tmuxSession": "custom"}), encoding="utf-8")
    monkeypatch.setenv(CONFIG_PATH_ENV_VAR, str(custom))
    assert load_config(tmp_path).tmux_session == "custom"


def test_malformed_json_uses_defaults(tmp_path: Path) -> None:
    path = tmp_path / ".ai" / "config.json"
    path.parent.mkdir()
    path.write_text("{not json", encoding="utf-8")
    config = load_config(tmp_path)
    assert config.tmux_session == "scrutiny"


def test_invalid_targets_use_defaults(tmp_path: Path) -> None:
    _write_config(tmp_path, {"targets": {"web": "  "}})
    config = load_config(tmp_path)
    assert config.targets == {}


def test_populate_by_field_name() -> None:
    config = ScrutinyConfig(target_dir="/repo", tmux_session="s")
    assert config.target_dir == "/repo"
    assert config.model_dump(by_alias=True)["tmuxSession"] == "s"
    assert "project_root" not in config.model_dump()
