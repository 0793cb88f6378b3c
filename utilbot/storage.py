# -*- coding: utf-8 -*-

# --- IMPORTS ---
import logging
import os
import re
import shutil
from pathlib import Path

# Local Imports
from .errors import OutsideRootError

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[\x00-\x1f<>:\"|?*]")


class UserDirectories:
    """Maps a user id to an isolated directory below the base data path."""

    def __init__(self, base_path: str | os.PathLike):
        self.base_path = Path(base_path).resolve()

    def user_root(self, user_id: int) -> Path:
        return self.base_path / str(int(user_id))

    def ensure_user_root(self, user_id: int) -> Path:
        """Creates (if needed) and returns <base>/<user_id>."""
        root = self.user_root(user_id)
        root.mkdir(parents=True, exist_ok=True)
        return root

    def ensure_feature_dir(self, user_id: int, feature_dir: str) -> Path:
        path = self.resolve_within_user(user_id, feature_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def resolve_within_user(self, user_id: int, relative_path: str | os.PathLike) -> Path:
        """
        Resolves `relative_path` against the user's root and returns it only if
        the normalized result is a strict descendant of that root.
        Raises OutsideRootError otherwise.
        """
        root = self.ensure_user_root(user_id)
        candidate = Path(os.path.normpath(os.path.join(root, relative_path)))
        if candidate == root or root not in candidate.parents:
            logger.warning(f"Rejected path '{relative_path}' for user {user_id}: outside data directory.")
            raise OutsideRootError(user_id, str(relative_path))
        return candidate


def safe_file_name(name: str, fallback: str = "file") -> str:
    """Strips directory components and characters the filesystem won't accept."""
    base = os.path.basename((name or "").replace("\\", "/"))
    base = _UNSAFE_NAME_CHARS.sub("_", base).strip().lstrip(".")
    return base or fallback


def clear_directory(path: Path, keep: tuple = ()) -> int:
    """Removes every entry of `path` except those listed in `keep`. Returns the number removed."""
    if not path.exists():
        return 0
    removed = 0
    keep = {Path(p) for p in keep}
    for entry in path.iterdir():
        if entry in keep:
            continue
        try:
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            removed += 1
        except OSError as e:
            logger.error(f"Error removing {entry}: {e}")
    return removed


def folder_size(path: Path) -> int:
    """Total size in bytes of every file below `path`."""
    return sum(f.stat().st_size for f in path.rglob("*") if f.is_file())
