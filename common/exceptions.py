"""Exception hierarchy shared by the hub and edge services."""

from typing import Optional


class SyncException(Exception):
    """
    Base exception class for all replication errors.
    """

    def __init__(self, message: str, path: Optional[str] = None):
        self.message = message
        self.path = path
        super().__init__(message)


class SetupError(SyncException):
    """
    Raised when a replica root cannot be created or written at startup.
    """
    pass


class WatchError(SyncException):
    """
    Raised when the change source cannot attach to a root.
    """
    pass


class ApplyError(SyncException):
    """
    Raised when a filesystem operation fails while applying a change.
    """

    def __init__(self, message: str, operation: str, path: Optional[str] = None):
        self.operation = operation
        super().__init__(message, path)


class TransportError(SyncException):
    """
    Raised when the message channel cannot be established or used.
    """
    pass


class ProtocolError(SyncException):
    """
    Raised for malformed frames, unknown messages or invalid paths.
    """

    def __init__(self, message: str, operation: str = "unknown", path: Optional[str] = None):
        self.operation = operation
        super().__init__(message, path)
