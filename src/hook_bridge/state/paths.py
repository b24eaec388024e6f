"""Locate the hook state file under the repository's git directory."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

STATE_DIR_NAME = "hook-bridge"
STATE_FILE_NAME = "hook-state.json"
MAX_SEARCH_DEPTH = 10


def find_git_dir(start: Path | None = None) -> Path | None:
    """Walk up from ``start`` looking for ``.git``.

    A ``.git`` file (worktrees, submodules) is followed through its
    ``gitdir:`` pointer, resolved relative to the directory holding it.
    """

    directory = (start or Path.cwd()).resolve()
    for _ in range(MAX_SEARCH_DEPTH):
        candidate = directory / ".git"
        if candidate.is_dir():
            return candidate
        if candidate.is_file():
            resolved = _follow_gitdir_file(candidate)
            if resolved is not None:
                return resolved
        if directory.parent == directory:
            break
        directory = directory.parent
    return None


def state_path_for(git_dir: Path) -> Path:
    return git_dir / STATE_DIR_NAME / STATE_FILE_NAME


def _follow_gitdir_file(git_file: Path) -> Path | None:
    try:
        content = git_file.read_text("utf-8").strip()
    except OSError as exc:
        logger.warning("Cannot read %s: %s", git_file, exc)
        return None
    if not content.startswith("gitdir:"):
        return None
    target = (git_file.parent / content[len("gitdir:") :].strip()).resolve()
    return target if target.is_dir() else None
