"""Tests for path containment checks."""

from __future__ import annotations

from pathlib import Path

from agent_scrutiny.paths import check_relative_path, normalize_relative_path


def test_normalize_collapses_segments() -> None:
    assert normalize_relative_path("src/./lib//util.py") == "src/lib/util.py"
    assert normalize_relative_path("src\\lib\\util.py") == "src/lib/util.py"


def test_relative_path_inside_root(tmp_path: Path) -> None:
    assert check_relative_path("src/app.py", tmp_path) is None
    assert check_relative_path("src/../README.md", tmp_path) is None


def test_rejects_empty(tmp_path: Path) -> None:
    assert check_relative_path("  ", tmp_path) == "path is required"


def test_rejects_absolute(tmp_path: Path) -> None:
    assert check_relative_path("/etc/passwd", tmp_path) == "absolute paths are not allowed"


def test_rejects_parent_traversal(tmp_path: Path) -> None:
    assert check_relative_path("../secret.txt", tmp_path) is not None
    assert check_relative_path("src/../../secret.txt", tmp_path) is not None


def test_rejects_symlink_escape(tmp_path: Path) -> None:
    root = tmp_path / "repo"
    outside = tmp_path / "outside"
    root.mkdir()
    outside.mkdir()
    (root / "link").symlink_to(outside, target_is_directory=True)
    assert check_relative_path("link/file.txt", root) == (
        "only files under the target directory are accessible"
    )


def test_sibling_prefix_is_not_contained(tmp_path: Path) -> None:
    """A sibling directory sharing the root's name prefix must not pass."""
    root = tmp_path / "repo"
    root.mkdir()
    (tmp_path / "repo-other").mkdir()
    assert check_relative_path("../repo-other/x.py", root) is not None
