"""
Hub agent: owner of the canonical root.

Answers state and content queries, applies operations submitted by edges
and broadcasts every change observed under the canonical root. Inbound
work from all sessions and from the change source goes through a single
inbox consumed by one dispatch task, so operations on the canonical root
are applied one at a time.
"""

import asyncio
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel

from common import fs_ops
from common.constants import DEFAULT_SUPPRESSION_WINDOW_MS
from common.exceptions import ApplyError, ProtocolError, SyncException
from common.ledger import OperationLedger
from common.logging_config import get_logger
from common.paths import normalize_relative, resolve_under_root
from common.protocol import (
    CHANGE,
    CONTENT,
    CONTENT_QUERY,
    OPERATION,
    OPERATION_ERROR,
    STATE,
    ChangePayload,
    ContentPayload,
    ContentQueryPayload,
    OperationErrorPayload,
    OperationPayload,
    decode_content,
    decode_message,
    encode_content,
    error_message,
    state_message,
)
from common.snapshot import build_snapshot, snapshot_paths
from common.types import (
    ChangeEvent,
    ChangeKind,
    Direction,
    OperationFamily,
    OperationKey,
    key_for_change,
)
from common.watcher import ChangeSource
from hub.session import Session, SessionRegistry

logger = get_logger(__name__)

_CONNECT = "connect"
_DISCONNECT = "disconnect"
_MESSAGE = "message"
_LOCAL = "local"

# ledger owner of write markers that stand for a permission change only
_ATTRIBUTES_ONLY = "attributes-only"

_BROADCAST_EVENTS = {
    ChangeKind.ADDED: ("add", "file"),
    ChangeKind.MODIFIED: ("change", "file"),
    ChangeKind.DELETED: ("unlink", "file"),
    ChangeKind.DIR_ADDED: ("addDir", "directory"),
    ChangeKind.DIR_DELETED: ("unlinkDir", "directory"),
}


class HubAgent:
    """Canonical replica serving any number of edge sessions."""

    def __init__(
        self,
        root: Path,
        suppression_window: float = DEFAULT_SUPPRESSION_WINDOW_MS / 1000.0,
        watch: bool = True
    ):
        """
        Initialize hub agent.

        Args:
            root: Prepared canonical root
            suppression_window: Seconds an applied operation suppresses its echo
            watch: Whether to run the change source on the root
        """
        self.root = Path(root).resolve()
        self.watch = watch
        self.sessions = SessionRegistry()
        self.ledger = OperationLedger(window_seconds=suppression_window)
        self.change_source: Optional[ChangeSource] = None
        self.inbox: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self) -> None:
        """Start the dispatch task and the change source."""
        if self.running:
            logger.warning("Hub agent already running")
            return

        self._loop = asyncio.get_running_loop()
        self.inbox = asyncio.Queue()
        self.running = True
        self._task = asyncio.create_task(self._dispatch_loop())

        if self.watch:
            self.change_source = ChangeSource(self.root, self._on_watcher_event)
            await asyncio.to_thread(self.change_source.start)

        logger.info(f"Hub agent started [root={self.root}, watch={self.watch}]")

    async def stop(self) -> None:
        """Stop the change source and the dispatch task."""
        if not self.running:
            return

        self.running = False

        if self.change_source:
            await asyncio.to_thread(self.change_source.stop)
            self.change_source = None

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        for session in await self.sessions.get_all():
            session.close()

        logger.info("Hub agent stopped")

    def _on_watcher_event(self, event: ChangeEvent) -> None:
        """Hand a change source event to the dispatch loop (observer thread)."""
        if self._loop is None or self.inbox is None:
            return
        self._loop.call_soon_threadsafe(self.inbox.put_nowait, (_LOCAL, None, event))

    async def submit_connect(self, session: Session) -> None:
        await self.inbox.put((_CONNECT, session, None))

    async def submit_disconnect(self, session: Session) -> None:
        await self.inbox.put((_DISCONNECT, session, None))

    async def submit_frame(self, session: Session, frame: str) -> None:
        """
        Decode a raw frame from a session and queue it.

        Malformed frames are answered with an operation error immediately.
        """
        try:
            name, payload = decode_message(frame)
        except ProtocolError as e:
            logger.warning(f"Protocol error from {session.session_id}: {e.message}")
            session.send(OPERATION_ERROR, error_message(e.message, e.operation, e.path))
            return
        await self.inbox.put((_MESSAGE, session, (name, payload)))

    async def _dispatch_loop(self) -> None:
        """Process inbox items one at a time."""
        while self.running:
            kind, session, item = await self.inbox.get()
            try:
                if kind == _CONNECT:
                    await self.on_connect(session)
                elif kind == _DISCONNECT:
                    await self.on_disconnect(session)
                elif kind == _MESSAGE:
                    await self.handle_message(session, *item)
                elif kind == _LOCAL:
                    await self.on_local_change(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error dispatching {kind}: {e}", exc_info=True)

    async def on_connect(self, session: Session) -> None:
        """Register a new session and send it the current snapshot."""
        await self.sessions.add(session)
        try:
            entries = await asyncio.to_thread(build_snapshot, self.root)
        except Exception as e:
            logger.error(f"Error building state for {session.session_id}: {e}", exc_info=True)
            session.send(OPERATION_ERROR, error_message("Failed to retrieve file system state", STATE))
            return

        logger.info(f"Sending state to {session.session_id}: {len(entries)} entries")
        session.send(STATE, state_message(entries))

    async def on_disconnect(self, session: Session) -> None:
        await self.sessions.remove(session.session_id)
        session.close()

    async def handle_message(self, session: Session, name: str, payload: BaseModel) -> None:
        """Dispatch one decoded message from a session."""
        if name == OPERATION:
            await self.on_remote_operation(session, payload)
        elif name == CONTENT_QUERY:
            await self.on_query_content(session, payload)
        elif name == OPERATION_ERROR:
            self.on_edge_error(session, payload)
        else:
            logger.warning(f"Unexpected message {name} from {session.session_id}")
            session.send(OPERATION_ERROR, error_message(f"Unexpected message: {name}", name))

    def on_edge_error(self, session: Session, payload: OperationErrorPayload) -> None:
        logger.warning(
            f"Edge {session.session_id} reported error: {payload.message} "
            f"[operation={payload.operation}, path={payload.path}]"
        )

    async def on_query_content(self, session: Session, payload: ContentQueryPayload) -> None:
        """Send the bytes of one file back to the requesting session."""
        path = payload.path
        try:
            data = await asyncio.to_thread(fs_ops.read_file, self.root, path)
        except ProtocolError as e:
            session.send(OPERATION_ERROR, error_message(e.message, CONTENT_QUERY, path))
            return
        except OSError as e:
            logger.error(f"Error reading file content for {path}: {e}")
            session.send(OPERATION_ERROR, error_message(f"Error reading file {path}", CONTENT_QUERY, path))
            return

        if data is None:
            logger.info(f"File not found for content query from {session.session_id}: {path}")
            session.send(OPERATION_ERROR, error_message(f"File not found on hub: {path}", CONTENT_QUERY, path))
            return

        session.send(CONTENT, ContentPayload(path=path, content=encode_content(data)))
        logger.debug(f"Sent content for {path} to {session.session_id}")

    async def on_remote_operation(self, session: Session, payload: OperationPayload) -> None:
        """
        Apply an edge operation to the canonical root.

        Any failure is reported to the originating session only.
        """
        operation = payload.operation
        logger.info(f"Processing operation from {session.session_id}: {operation} {payload.path}")
        try:
            await self._apply_operation(session, payload)
        except SyncException as e:
            logger.error(f"Error performing {operation} on {payload.path}: {e.message}")
            session.send(OPERATION_ERROR, error_message(e.message, operation, payload.path))
        except OSError as e:
            logger.error(f"Error performing {operation} on {payload.path}: {e}")
            session.send(OPERATION_ERROR, error_message(str(e), operation, payload.path))

    async def _apply_operation(self, session: Session, payload: OperationPayload) -> None:
        operation = payload.operation
        path = normalize_relative(payload.path, operation)
        owner = session.session_id

        if operation == "write":
            if payload.content is None:
                raise ProtocolError("write requires content", operation, path)
            data = decode_content(payload.content, operation, path)
            self._register_parents(path, owner)
            self.ledger.register(OperationKey(OperationFamily.WRITE, path), Direction.INBOUND, owner)
            await asyncio.to_thread(fs_ops.write_file, self.root, path, data)
            logger.info(f"File written: {path}")

        elif operation == "delete":
            descendants = await asyncio.to_thread(snapshot_paths, self.root, path)
            self.ledger.register_all(
                [OperationKey(OperationFamily.DELETE, p) for p in [path] + descendants],
                Direction.INBOUND,
                owner
            )
            removed = await asyncio.to_thread(fs_ops.remove_path, self.root, path)
            logger.info(f"Resource removed: {path}" if removed else f"Resource already absent: {path}")

        elif operation == "mkdir":
            self._register_parents(path, owner)
            self.ledger.register(OperationKey(OperationFamily.MKDIR, path), Direction.INBOUND, owner)
            await asyncio.to_thread(fs_ops.make_directory, self.root, path)
            logger.info(f"Directory created: {path}")

        elif operation == "rename":
            if payload.new_path is None:
                raise ProtocolError("rename requires newPath", operation, path)
            new_path = normalize_relative(payload.new_path, operation)
            await self._apply_rename(path, new_path, owner)

        elif operation == "chmod":
            if payload.mode is None:
                raise ProtocolError("chmod requires mode", operation, path)
            self.ledger.register(OperationKey(OperationFamily.CHMOD, path), Direction.INBOUND, owner)
            # inotify reports attribute changes as modifications; a pending
            # content write keeps its own marker
            write_key = OperationKey(OperationFamily.WRITE, path)
            if self.ledger.lookup(write_key, Direction.INBOUND) is None:
                self.ledger.register(write_key, Direction.INBOUND, _ATTRIBUTES_ONLY)
            full_path = await asyncio.to_thread(fs_ops.change_mode, self.root, path, payload.mode)
            logger.info(f"Chmod {payload.mode:o} applied to {path}")
            entry_type = "directory" if full_path.is_dir() else "file"
            await self.sessions.broadcast(
                CHANGE,
                ChangePayload(event="chmod", path=path, type=entry_type, mode=payload.mode)
            )

        else:
            raise ProtocolError(f"Unknown operation: {operation}", operation, path)

    async def _apply_rename(self, path: str, new_path: str, owner: str) -> None:
        source = resolve_under_root(self.root, path, "rename")
        if not source.exists():
            raise ApplyError(f"Rename source does not exist: {path}", "rename", path)

        is_dir = source.is_dir()
        moved = await asyncio.to_thread(snapshot_paths, self.root, path) if is_dir else []
        created_family = OperationFamily.MKDIR if is_dir else OperationFamily.WRITE

        keys = [
            OperationKey(OperationFamily.RENAME, path),
            OperationKey(OperationFamily.DELETE, path),
            OperationKey(created_family, new_path),
        ]
        for relative in moved:
            suffix = relative[len(path) + 1:]
            keys.append(OperationKey(OperationFamily.DELETE, relative))
            keys.append(OperationKey(OperationFamily.WRITE, f"{new_path}/{suffix}"))
            keys.append(OperationKey(OperationFamily.MKDIR, f"{new_path}/{suffix}"))
        self._register_parents(new_path, owner)
        self.ledger.register_all(keys, Direction.INBOUND, owner)

        await asyncio.to_thread(fs_ops.move_path, self.root, path, new_path)
        logger.info(f"Renamed: {path} -> {new_path}")

    def _register_parents(self, path: str, owner: str) -> None:
        for parent in fs_ops.missing_directories(self.root, path):
            self.ledger.register(OperationKey(OperationFamily.MKDIR, parent), Direction.INBOUND, owner)

    async def on_local_change(self, event: ChangeEvent) -> None:
        """
        Broadcast a change observed under the canonical root.

        The session whose operation caused the change (if any, within the
        suppression window) is left out of the broadcast.
        """
        if event.kind == ChangeKind.RENAMED:
            await self._broadcast_rename(event)
            return

        if event.kind not in _BROADCAST_EVENTS:
            logger.debug(f"Ignoring {event.kind.value} event for {event.path}")
            return

        exclude = self._echo_owner(key_for_change(event))
        if event.kind == ChangeKind.MODIFIED and exclude == _ATTRIBUTES_ONLY:
            logger.debug(f"Ignoring modification from applied chmod: {event.path}")
            return

        payload = await self._change_payload(event.kind, event.path)
        delivered = await self.sessions.broadcast(CHANGE, payload, exclude=exclude)
        logger.info(
            f"Broadcast {payload.event} {event.path} to {delivered} session(s)"
            + (f" [excluded={exclude}]" if exclude else "")
        )

    async def _broadcast_rename(self, event: ChangeEvent) -> None:
        destination = self.root.joinpath(*event.dest_path.split('/'))
        is_dir = destination.is_dir()

        removal = ChangeKind.DIR_DELETED if is_dir else ChangeKind.DELETED
        creation = ChangeKind.DIR_ADDED if is_dir else ChangeKind.ADDED
        changes: List[Tuple[ChangeKind, str]] = [(removal, event.path), (creation, event.dest_path)]

        if is_dir:
            for entry in await asyncio.to_thread(build_snapshot, self.root, event.dest_path):
                changes.append((ChangeKind.DIR_ADDED if entry.is_directory else ChangeKind.ADDED, entry.path))

        rename_owner = self._echo_owner(OperationKey(OperationFamily.RENAME, event.path))
        for kind, path in changes:
            exclude = rename_owner or self._echo_owner(key_for_change(ChangeEvent(kind=kind, path=path)))
            payload = await self._change_payload(kind, path)
            await self.sessions.broadcast(CHANGE, payload, exclude=exclude)

        logger.info(f"Broadcast rename {event.path} -> {event.dest_path} as {len(changes)} change(s)")

    async def _change_payload(self, kind: ChangeKind, path: str) -> ChangePayload:
        """Build a change payload, reading file content at broadcast time."""
        event_name, entry_type = _BROADCAST_EVENTS[kind]
        payload = ChangePayload(event=event_name, path=path, type=entry_type)

        if kind in (ChangeKind.ADDED, ChangeKind.MODIFIED):
            try:
                data = await asyncio.to_thread(fs_ops.read_file, self.root, path)
            except (OSError, ProtocolError) as e:
                logger.error(f"Error preparing content for {path}: {e}")
                data = None
            if data is None:
                logger.info(f"File for {event_name} at {path} not found when preparing broadcast, sending without content")
            else:
                payload.content = encode_content(data)

        return payload

    def _echo_owner(self, key: OperationKey) -> Optional[str]:
        marker = self.ledger.lookup(key, Direction.INBOUND)
        return marker.owner if marker else None
