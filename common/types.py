"""Shared data type definitions (FsEntry, ChangeEvent, OperationKey, etc.)."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class EntryKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    DIR_ADDED = "dir_added"
    DIR_DELETED = "dir_deleted"
    RENAMED = "renamed"
    CHMOD = "chmod"


class OperationFamily(str, Enum):
    WRITE = "write"
    DELETE = "delete"
    MKDIR = "mkdir"
    RENAME = "rename"
    CHMOD = "chmod"


class Direction(str, Enum):
    """Which side caused a ledger registration."""
    INBOUND = "inbound"
    OUTBOUND = "outbound"


@dataclass(frozen=True)
class FsEntry:
    """
    One non-hidden item of a snapshot.
    """
    path: str
    kind: EntryKind
    size: Optional[int] = None

    @property
    def is_directory(self) -> bool:
        return self.kind == EntryKind.DIRECTORY


@dataclass(frozen=True)
class ChangeEvent:
    """
    A single mutation, either observed locally or received from a peer.
    """
    kind: ChangeKind
    path: str
    payload: Optional[bytes] = None
    mode: Optional[int] = None
    dest_path: Optional[str] = None


@dataclass(frozen=True)
class OperationKey:
    """
    Echo-suppression identity: operation family plus relative path.
    """
    family: OperationFamily
    path: str


CHANGE_FAMILIES = {
    ChangeKind.ADDED: OperationFamily.WRITE,
    ChangeKind.MODIFIED: OperationFamily.WRITE,
    ChangeKind.DELETED: OperationFamily.DELETE,
    ChangeKind.DIR_DELETED: OperationFamily.DELETE,
    ChangeKind.DIR_ADDED: OperationFamily.MKDIR,
    ChangeKind.RENAMED: OperationFamily.RENAME,
    ChangeKind.CHMOD: OperationFamily.CHMOD,
}


def key_for_change(event: ChangeEvent) -> OperationKey:
    """Collapse a change event into its ledger key."""
    return OperationKey(CHANGE_FAMILIES[event.kind], event.path)
