"""Relative path normalization and validation against a replica root."""

import os
from pathlib import Path, PurePosixPath
from typing import Optional

from common.exceptions import ProtocolError


def is_hidden(relative_path: str) -> bool:
    """
    Check whether any segment of a relative path starts with a dot.

    Args:
        relative_path: Slash-normalized path relative to a root

    Returns:
        True if the path or one of its ancestors is hidden
    """
    return any(part.startswith('.') for part in relative_path.split('/') if part)


def to_relative(root: Path, absolute_path: str) -> Optional[str]:
    """
    Convert an absolute path under root to a slash-normalized relative path.

    Args:
        root: Resolved replica root
        absolute_path: Path reported by the change source

    Returns:
        Relative path, or None for the root itself or paths outside it
    """
    try:
        relative = os.path.relpath(absolute_path, root)
    except ValueError:
        return None

    relative = relative.replace(os.sep, '/')
    if relative in ('', '.') or relative == '..' or relative.startswith('../'):
        return None
    return relative


def normalize_relative(relative_path: str, operation: str = "unknown") -> str:
    """
    Validate a root-relative path received from a peer.

    Args:
        relative_path: Path as sent on the wire
        operation: Operation name used in the error

    Returns:
        Normalized path without redundant separators

    Raises:
        ProtocolError: If the path is empty, absolute or escapes the root
    """
    if not isinstance(relative_path, str) or not relative_path.strip():
        raise ProtocolError("Path must be a non-empty string", operation, relative_path)

    candidate = relative_path.replace('\\', '/')
    if candidate.startswith('/') or PurePosixPath(candidate).is_absolute() or ':' in candidate.split('/')[0]:
        raise ProtocolError(f"Absolute paths are not allowed: {relative_path}", operation, relative_path)

    parts = [part for part in candidate.split('/') if part not in ('', '.')]
    if not parts:
        raise ProtocolError("Path must not refer to the root", operation, relative_path)
    if '..' in parts:
        raise ProtocolError(f"Path escapes the root: {relative_path}", operation, relative_path)

    return '/'.join(parts)


def resolve_under_root(root: Path, relative_path: str, operation: str = "unknown") -> Path:
    """
    Resolve a wire path to an absolute path inside root.

    Args:
        root: Resolved replica root
        relative_path: Path as sent on the wire
        operation: Operation name used in the error

    Returns:
        Absolute path beneath root

    Raises:
        ProtocolError: If the path is invalid or resolves outside root
    """
    normalized = normalize_relative(relative_path, operation)
    full_path = root.joinpath(*normalized.split('/'))

    try:
        full_path.resolve().relative_to(root.resolve())
    except ValueError:
        raise ProtocolError(f"Path resolves outside the root: {relative_path}", operation, relative_path)

    return full_path


def parent_of(relative_path: str) -> Optional[str]:
    """Return the parent relative path, or None for top-level entries."""
    parent = relative_path.rsplit('/', 1)[0] if '/' in relative_path else ''
    return parent or None


def is_within(relative_path: str, ancestor: str) -> bool:
    """Check whether relative_path equals ancestor or lies beneath it."""
    return relative_path == ancestor or relative_path.startswith(ancestor + '/')
