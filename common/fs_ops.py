"""Filesystem apply helpers: write, remove, mkdir, move, chmod under a replica root."""

import errno
import os
import shutil
import stat
from pathlib import Path
from typing import List, Optional

from common.constants import PERMISSION_BITS_MASK, ROOT_PROBE_FILENAME
from common.exceptions import ApplyError, SetupError
from common.logging_config import get_logger
from common.paths import parent_of, resolve_under_root

logger = get_logger(__name__)


def prepare_root(root: str) -> Path:
    """
    Create the replica root and verify it is writable.

    Args:
        root: Root directory as given on the command line

    Returns:
        Resolved root path

    Raises:
        SetupError: If the directory cannot be created or written
    """
    root_path = Path(root).expanduser().resolve()
    try:
        root_path.mkdir(parents=True, exist_ok=True)
        probe = root_path / ROOT_PROBE_FILENAME
        probe.write_text('test')
        probe.unlink()
    except OSError as e:
        raise SetupError(f"Root {root_path} is not usable: {e}", str(root_path))

    logger.info(f"Root directory created/verified: {root_path}")
    return root_path


def get_mode(path: Path) -> int:
    """
    Get permission bits of a path.

    Raises:
        OSError: If the path cannot be stat'ed
    """
    return stat.S_IMODE(path.stat().st_mode) & PERMISSION_BITS_MASK


def missing_directories(root: Path, relative_path: str) -> List[str]:
    """
    List ancestor directories of relative_path that do not exist yet.

    Args:
        root: Replica root
        relative_path: Normalized path relative to root

    Returns:
        Relative directory paths, outermost first
    """
    missing = []
    parent = parent_of(relative_path)
    while parent is not None and not root.joinpath(*parent.split('/')).is_dir():
        missing.append(parent)
        parent = parent_of(parent)
    missing.reverse()
    return missing


def read_file(root: Path, relative_path: str) -> Optional[bytes]:
    """
    Read a regular file under root.

    Args:
        root: Replica root
        relative_path: Path relative to root

    Returns:
        File bytes, or None if the path is missing or not a regular file
    """
    full_path = resolve_under_root(root, relative_path, "read")
    try:
        if not full_path.is_file():
            return None
        return full_path.read_bytes()
    except (FileNotFoundError, NotADirectoryError, IsADirectoryError):
        return None


def write_file(root: Path, relative_path: str, data: bytes) -> Path:
    """
    Write bytes to a file, creating parent directories as needed.

    Writing identical content twice leaves the same result on disk.

    Raises:
        ApplyError: If the write fails
    """
    full_path = resolve_under_root(root, relative_path, "write")
    try:
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_bytes(data)
    except OSError as e:
        raise ApplyError(f"Failed to write {relative_path}: {e}", "write", relative_path)
    return full_path


def make_directory(root: Path, relative_path: str) -> Path:
    """
    Ensure a directory exists.

    Raises:
        ApplyError: If the directory cannot be created
    """
    full_path = resolve_under_root(root, relative_path, "mkdir")
    try:
        full_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ApplyError(f"Failed to create directory {relative_path}: {e}", "mkdir", relative_path)
    return full_path


def _remove_tree(directory: Path) -> None:
    """Remove a directory tree without recursion, deepest entries first."""
    pending = [directory]
    visited = []

    while pending:
        current = pending.pop()
        visited.append(current)
        try:
            with os.scandir(current) as entries:
                for entry in entries:
                    if entry.is_dir(follow_symlinks=False):
                        pending.append(Path(entry.path))
                    else:
                        try:
                            os.unlink(entry.path)
                        except FileNotFoundError:
                            pass
        except FileNotFoundError:
            continue

    for current in reversed(visited):
        try:
            os.rmdir(current)
        except FileNotFoundError:
            pass


def remove_path(root: Path, relative_path: str) -> bool:
    """
    Remove a file or a directory tree.

    A missing path counts as already removed.

    Returns:
        True if something was removed, False if the path did not exist

    Raises:
        ApplyError: If removal fails for another reason
    """
    full_path = resolve_under_root(root, relative_path, "delete")
    try:
        if full_path.is_dir() and not full_path.is_symlink():
            _remove_tree(full_path)
        else:
            full_path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        raise ApplyError(f"Failed to remove {relative_path}: {e}", "delete", relative_path)
    return True


def _rename(source: Path, destination: Path) -> None:
    """POSIX rename semantics: replace a file or an empty directory, never nest."""
    try:
        os.replace(source, destination)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        # another filesystem mounted under the root
        if destination.is_dir() and not destination.is_symlink():
            destination.rmdir()
        shutil.move(str(source), str(destination))


def move_path(root: Path, relative_path: str, new_relative_path: str) -> Path:
    """
    Move a file or directory to a new location under root.

    An existing destination is replaced the way rename(2) replaces it.

    Raises:
        ApplyError: If the source does not exist or the move fails
    """
    source = resolve_under_root(root, relative_path, "rename")
    destination = resolve_under_root(root, new_relative_path, "rename")

    if not source.exists():
        raise ApplyError(f"Rename source does not exist: {relative_path}", "rename", relative_path)

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        _rename(source, destination)
    except OSError as e:
        raise ApplyError(f"Failed to rename {relative_path} -> {new_relative_path}: {e}", "rename", relative_path)
    return destination


def change_mode(root: Path, relative_path: str, mode: int) -> Path:
    """
    Apply permission bits to a path.

    Raises:
        ApplyError: If the path is missing or chmod fails
    """
    full_path = resolve_under_root(root, relative_path, "chmod")
    try:
        os.chmod(full_path, mode & PERMISSION_BITS_MASK)
    except OSError as e:
        raise ApplyError(f"Failed to chmod {relative_path} to {mode:o}: {e}", "chmod", relative_path)
    return full_path
