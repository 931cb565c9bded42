"""
Directory snapshot builder.

Walks a replica root depth-first and lists every non-hidden entry with
directories ahead of their descendants, so a consumer replaying the list
as create operations never needs a parent that does not exist yet.
"""

import os
from pathlib import Path
from typing import List, Tuple

from common.logging_config import get_logger
from common.types import EntryKind, FsEntry

logger = get_logger(__name__)


def _list_children(directory: Path, relative_base: str) -> List[Tuple[Path, str, bool]]:
    """
    List visible children of a directory sorted by name.

    Args:
        directory: Absolute directory path
        relative_base: Relative path of the directory ('' for the root)

    Returns:
        List of (absolute path, relative path, is_directory) tuples.
        Returns an empty list if the directory vanished or is unreadable.
    """
    children = []
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                if entry.name.startswith('.'):
                    continue
                try:
                    if entry.is_symlink():
                        continue
                    is_dir = entry.is_dir(follow_symlinks=False)
                    if not is_dir and not entry.is_file(follow_symlinks=False):
                        continue
                except OSError:
                    continue
                relative = f"{relative_base}/{entry.name}" if relative_base else entry.name
                children.append((Path(entry.path), relative, is_dir))
    except FileNotFoundError:
        logger.debug(f"Directory vanished during walk: {directory}")
        return []
    except OSError as e:
        logger.warning(f"Skipping unreadable directory {directory}: {e}")
        return []

    children.sort(key=lambda child: child[1])
    return children


def build_snapshot(root: Path, relative_base: str = '') -> List[FsEntry]:
    """
    Build a pre-order snapshot of every non-hidden entry under root.

    Args:
        root: Replica root
        relative_base: Optional subtree to walk, relative to root

    Returns:
        Ordered list of FsEntry, each directory before its descendants
    """
    root = Path(root)
    start = root.joinpath(*relative_base.split('/')) if relative_base else root

    snapshot: List[FsEntry] = []
    stack = list(reversed(_list_children(start, relative_base)))

    while stack:
        absolute, relative, is_dir = stack.pop()

        if is_dir:
            snapshot.append(FsEntry(path=relative, kind=EntryKind.DIRECTORY))
            stack.extend(reversed(_list_children(absolute, relative)))
            continue

        try:
            size = absolute.stat().st_size
        except OSError:
            logger.debug(f"File vanished during walk: {relative}")
            continue
        snapshot.append(FsEntry(path=relative, kind=EntryKind.FILE, size=size))

    return snapshot


def snapshot_paths(root: Path, relative_path: str) -> List[str]:
    """
    List relative paths of every visible descendant of a directory.

    Args:
        root: Replica root
        relative_path: Directory relative to root

    Returns:
        Relative paths in pre-order; empty if the path is not a directory
    """
    if not root.joinpath(*relative_path.split('/')).is_dir():
        return []
    return [entry.path for entry in build_snapshot(root, relative_path)]
