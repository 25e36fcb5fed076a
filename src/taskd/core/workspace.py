"""Workspace path guard — keeps task working folders inside the workspace root.

A working folder is supplied as a path relative to the workspace root.
Validation is lexical first (format, ``..`` escapes) and then physical:
the target is resolved against the real filesystem so that a symlink
anywhere between the root and the target cannot smuggle the task out.

Failure reasons (``details.reason`` on WORKSPACE_POLICY_VIOLATION):

    invalid_path_format   empty, NUL, backslash or absolute path
    path_escape           normalizes above the root, or resolves outside it
    not_found             target does not exist
    not_a_directory       target exists but is not a directory
    symlink_component     a segment between root and target is a symlink
"""
from __future__ import annotations

import logging
import os
import posixpath
import stat
from typing import Optional

from taskd.core.errors import WORKSPACE_POLICY_VIOLATION, Result

logger = logging.getLogger("taskd.workspace")

INVALID_PATH_FORMAT = "invalid_path_format"
PATH_ESCAPE = "path_escape"
NOT_FOUND = "not_found"
NOT_A_DIRECTORY = "not_a_directory"
SYMLINK_COMPONENT = "symlink_component"


def _violation(message: str, reason: str, path: str) -> Result:
    return Result.failure(WORKSPACE_POLICY_VIOLATION, message, reason=reason, path=path)


def resolve_workspace_root(raw_root: str | None) -> Optional[str]:
    """Canonicalize the configured workspace root, or return None if unusable.

    The root itself must exist, must not be a symlink and must be a directory.
    """
    if not raw_root or not raw_root.strip():
        return None
    candidate = os.path.abspath(os.path.expanduser(raw_root.strip()))
    try:
        st = os.lstat(candidate)
    except OSError as exc:
        logger.warning("Workspace root unavailable (%s): %s", candidate, exc)
        return None
    if stat.S_ISLNK(st.st_mode):
        logger.warning("Workspace root must not be a symlink: %s", candidate)
        return None
    canonical = os.path.realpath(candidate)
    if not os.path.isdir(canonical):
        logger.warning("Workspace root is not a directory: %s", canonical)
        return None
    return canonical


def relative_to_root(root: str, folder: str) -> str:
    """Turn an absolute folder lexically inside *root* into a relative one.

    Anything else is returned unchanged and left for ``resolve_working_folder``
    to judge.
    """
    if not os.path.isabs(folder):
        return folder
    normalized = posixpath.normpath(folder)
    if normalized == root:
        return "."
    if normalized.startswith(root.rstrip("/") + "/"):
        return normalized[len(root.rstrip("/")) + 1:]
    return folder


def check_folder_format(relative: str) -> Optional[Result]:
    """Lexical checks only; returns the violation, or None when the path is well formed."""
    if not isinstance(relative, str) or not relative.strip():
        return _violation("Working folder is required", INVALID_PATH_FORMAT, str(relative))
    if "\x00" in relative or "\\" in relative:
        return _violation("Working folder contains invalid characters", INVALID_PATH_FORMAT, relative)
    if relative.startswith("/"):
        return _violation("Working folder must be relative to the workspace root", INVALID_PATH_FORMAT, relative)

    normalized = posixpath.normpath(relative)
    if normalized == ".." or normalized.startswith("../"):
        return _violation("Working folder escapes the workspace root", PATH_ESCAPE, relative)
    return None


def resolve_working_folder(root: str, relative: str) -> Result:
    """Validate *relative* against *root*; on success the value is the real path."""
    violation = check_folder_format(relative)
    if violation is not None:
        return violation

    normalized = posixpath.normpath(relative)
    candidate = root if normalized == "." else os.path.join(root, normalized)
    real = os.path.realpath(candidate)
    if not os.path.exists(real):
        return _violation("Working folder not found", NOT_FOUND, relative)
    if not os.path.isdir(real):
        return _violation("Working folder must be a directory", NOT_A_DIRECTORY, relative)
    if os.path.commonpath([root, real]) != root:
        return _violation("Working folder resolves outside the workspace root", PATH_ESCAPE, relative)

    # Every segment below the root must be a real directory, not a link.
    current = root
    if normalized != ".":
        for segment in normalized.split("/"):
            current = os.path.join(current, segment)
            try:
                st = os.lstat(current)
            except OSError:
                return _violation("Working folder not found", NOT_FOUND, relative)
            if stat.S_ISLNK(st.st_mode):
                logger.info("Rejected symlinked segment %s for %s", current, relative)
                return _violation("Working folder passes through a symlink", SYMLINK_COMPONENT, relative)

    return Result.success(real)
