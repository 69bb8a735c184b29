"""
sitebox-orchestrator — filesystem utilities

File: src/sitebox_orchestrator/utils/fs.py

Purpose
- Provide safe, minimal filesystem helpers for durable record writes and guarded deletion.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Temp files left behind by an interrupted write can be found and removed.
- Deletion refuses paths outside the owning state root.

Non-functional requirements
- Standard library only and cross-platform behavior where feasible.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

TEMP_SUFFIX = ".tmp"

__all__ = [
    "TEMP_SUFFIX",
    "atomic_write",
    "remove_stale_temp_files",
    "safe_delete",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``,
    4. fsync the parent directory so the rename itself is durable.

    Readers observe either the previous content or the new content, never a mix.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=TEMP_SUFFIX,
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        mode = "wb" if isinstance(data, bytes) else "w"
        kwargs = {} if isinstance(data, bytes) else {"encoding": encoding}
        with os.fdopen(fd, mode, **kwargs) as file_handle:
            file_handle.write(data)
            file_handle.flush()
            os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def remove_stale_temp_files(root: PathLike) -> list[Path]:
    """Remove ``.<name>.*.tmp`` leftovers of interrupted atomic writes under ``root``."""

    base = Path(root)
    if not base.is_dir():
        return []
    removed: list[Path] = []
    for candidate in sorted(base.rglob(f".*{TEMP_SUFFIX}")):
        if not candidate.is_file():
            continue
        with contextlib.suppress(FileNotFoundError):
            candidate.unlink()
            removed.append(candidate)
    return removed


def safe_delete(path: PathLike, root: PathLike) -> None:
    """
    Delete ``path`` only if it is contained within ``root``.

    Symlinks are unlinked without traversing into their targets.
    """

    workspace = Path(root).resolve(strict=True)
    if not workspace.is_dir():
        raise NotADirectoryError(f"{workspace!s} is not a directory")

    target = Path(path)
    candidate = target.parent.resolve(strict=True) / target.name
    if not _is_relative_to(candidate, workspace) or candidate == workspace:
        raise ValueError(f"refusing to delete path outside state root: {target!s}")

    if target.is_symlink():
        target.unlink()
        return

    resolved_target = target.resolve(strict=True)
    if not _is_relative_to(resolved_target, workspace):
        raise ValueError(f"refusing to delete path outside state root: {target!s}")

    if target.is_dir():
        shutil.rmtree(target)
        return

    target.unlink()


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _fsync_directory(path: Path) -> None:
    """
    Best-effort directory fsync for metadata durability after ``os.replace``.

    Some platforms/filesystems do not support fsync on directories.
    """

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
