"""Tests for the workspace path guard."""
from __future__ import annotations

import os

import pytest

from taskd.core.errors import WORKSPACE_POLICY_VIOLATION
from taskd.core.workspace import (
    check_folder_format,
    relative_to_root,
    resolve_workspace_root,
    resolve_working_folder,
)


@pytest.fixture
def root(workspace):
    return os.path.realpath(str(workspace))


def _reason(result):
    assert not result.ok
    assert result.error.code == WORKSPACE_POLICY_VIOLATION
    assert result.error.retryable is False
    return result.error.details["reason"]


# ── Accepted folders ─────────────────────────────────────────

def test_resolves_nested_folder(root) -> None:
    result = resolve_working_folder(root, "project/src")
    assert result.ok
    assert result.value == os.path.join(root, "project", "src")


def test_dot_resolves_to_root(root) -> None:
    assert resolve_working_folder(root, ".").value == root


def test_inner_dotdot_that_stays_inside_is_allowed(root) -> None:
    result = resolve_working_folder(root, "project/src/../src")
    assert result.ok
    assert result.value == os.path.join(root, "project", "src")


# ── Rejections ───────────────────────────────────────────────

@pytest.mark.parametrize("folder", ["", "   ", "/etc", "project\\src", "pro\x00ject"])
def test_invalid_path_format(root, folder) -> None:
    assert _reason(resolve_working_folder(root, folder)) == "invalid_path_format"


@pytest.mark.parametrize("folder", ["..", "../outside", "project/../../outside"])
def test_lexical_escape(root, folder) -> None:
    assert _reason(resolve_working_folder(root, folder)) == "path_escape"


def test_format_check_needs_no_filesystem() -> None:
    assert check_folder_format("does/not/exist") is None
    assert _reason(check_folder_format("../../etc")) == "path_escape"
    assert _reason(check_folder_format("/etc")) == "invalid_path_format"


def test_missing_folder(root) -> None:
    assert _reason(resolve_working_folder(root, "nope")) == "not_found"


def test_file_is_not_a_directory(root) -> None:
    with open(os.path.join(root, "project", "README"), "w") as f:
        f.write("hi")
    assert _reason(resolve_working_folder(root, "project/README")) == "not_a_directory"


def test_symlink_escaping_root(root, tmp_path) -> None:
    outside = tmp_path / "outside"
    outside.mkdir()
    os.symlink(str(outside), os.path.join(root, "escape"))
    assert _reason(resolve_working_folder(root, "escape")) == "path_escape"


def test_symlink_inside_root_is_rejected(root) -> None:
    os.symlink(os.path.join(root, "project"), os.path.join(root, "alias"))
    result = resolve_working_folder(root, "alias/src")
    assert _reason(result) == "symlink_component"
    assert result.error.details["path"] == "alias/src"


# ── Root resolution ──────────────────────────────────────────

def test_root_resolution(workspace, tmp_path) -> None:
    assert resolve_workspace_root(str(workspace)) == os.path.realpath(str(workspace))
    assert resolve_workspace_root(None) is None
    assert resolve_workspace_root("  ") is None
    assert resolve_workspace_root(str(tmp_path / "missing")) is None


def test_root_must_not_be_symlink(workspace, tmp_path) -> None:
    link = tmp_path / "ws-link"
    os.symlink(str(workspace), str(link))
    assert resolve_workspace_root(str(link)) is None


def test_root_must_be_directory(tmp_path) -> None:
    f = tmp_path / "file"
    f.write_text("x")
    assert resolve_workspace_root(str(f)) is None


def test_relative_to_root(root) -> None:
    assert relative_to_root(root, root) == "."
    assert relative_to_root(root, os.path.join(root, "project", "src")) == "project/src"
    assert relative_to_root(root, "project") == "project"
    assert relative_to_root(root, "/etc") == "/etc"
    assert relative_to_root(root, root + "-sibling") == root + "-sibling"
