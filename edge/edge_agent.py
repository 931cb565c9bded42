"""
Edge agent: keeps a local root convergent with the hub.

Lifecycle per connection: wait for the hub state, reconcile the local root
against it (InitialSync), then watch the root and poll permission bits
(Steady). Hub frames and local events are queued on one inbox and handled
by a single dispatch task, so applies and emissions never interleave.
"""

import asyncio
from collections import OrderedDict
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Set

from pydantic import BaseModel

from common import fs_ops
from common.constants import (
    DEFAULT_MODE_POLL_INTERVAL_SECONDS,
    DEFAULT_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_DELAY_SECONDS,
    DEFAULT_SUPPRESSION_WINDOW_MS,
    PERMISSION_BITS_MASK,
)
from common.exceptions import ProtocolError, SyncException, TransportError, WatchError
from common.ledger import OperationLedger
from common.logging_config import get_logger
from common.paths import is_hidden, normalize_relative
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
    FsEntryModel,
    OperationErrorPayload,
    OperationPayload,
    decode_content,
    decode_message,
    encode_content,
    error_message,
)
from common.snapshot import build_snapshot, snapshot_paths
from common.types import (
    ChangeEvent,
    ChangeKind,
    Direction,
    EntryKind,
    OperationFamily,
    OperationKey,
    key_for_change,
)
from common.watcher import ChangeSource
from edge.mode_tracker import ModeTracker
from edge.transport import HubConnection

logger = get_logger(__name__)

_HUB = "hub"
_LOCAL = "local"
_CLOSED = "closed"

_MAX_TRACKED_RENAMES = 256

_CHANGE_KINDS = {
    "add": ChangeKind.ADDED,
    "change": ChangeKind.MODIFIED,
    "unlink": ChangeKind.DELETED,
    "addDir": ChangeKind.DIR_ADDED,
    "unlinkDir": ChangeKind.DIR_DELETED,
    "chmod": ChangeKind.CHMOD,
}


class EdgeState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    INITIAL_SYNC = "initial_sync"
    STEADY = "steady"


class EdgeAgent:
    """Local replica following the hub."""

    def __init__(
        self,
        root: Path,
        hub_address: str,
        connection_factory: Callable[[str], HubConnection] = HubConnection,
        suppression_window: float = DEFAULT_SUPPRESSION_WINDOW_MS / 1000.0,
        poll_interval: float = DEFAULT_MODE_POLL_INTERVAL_SECONDS,
        reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY_SECONDS,
        watch: bool = True
    ):
        """
        Initialize edge agent.

        Args:
            root: Prepared local root
            hub_address: Hub address passed to the connection factory
            connection_factory: Builds a connection object for one attempt
            suppression_window: Seconds a ledger marker stays active
            poll_interval: Seconds between permission polls in Steady state
            reconnect_attempts: Consecutive failed attempts before giving up
            reconnect_delay: Seconds between connection attempts
            watch: Whether Steady state starts the change source and poll loop
        """
        self.root = Path(root).resolve()
        self.hub_address = hub_address
        self.connection_factory = connection_factory
        self.poll_interval = poll_interval
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.watch = watch

        self.state = EdgeState.DISCONNECTED
        self.ledger = OperationLedger(window_seconds=suppression_window)
        self.modes = ModeTracker(self.root)
        self.pending: Set[str] = set()
        # renames sent to the hub, source -> destination, newest last
        self.renames = OrderedDict()
        self.connection = None
        self.change_source: Optional[ChangeSource] = None
        self.inbox: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._poll_task: Optional[asyncio.Task] = None

    async def run(self) -> None:
        """
        Connect to the hub and follow it until the reconnect budget runs out.

        Raises:
            TransportError: When every attempt in the budget failed
            WatchError: If the change source cannot be started
        """
        self._loop = asyncio.get_running_loop()
        failures = 0

        while True:
            self.state = EdgeState.CONNECTING
            connection = self.connection_factory(self.hub_address)
            try:
                await connection.connect()
            except TransportError as e:
                failures += 1
                logger.warning(f"Connection attempt {failures}/{self.reconnect_attempts} failed: {e.message}")
                if failures >= self.reconnect_attempts:
                    self.state = EdgeState.DISCONNECTED
                    raise TransportError(
                        f"Giving up after {failures} failed connection attempts to {self.hub_address}"
                    )
                await asyncio.sleep(self.reconnect_delay)
                continue

            failures = 0
            try:
                await self._serve(connection)
            finally:
                await self._disconnect(connection)

            logger.info(f"Disconnected from hub, reconnecting in {self.reconnect_delay}s")
            await asyncio.sleep(self.reconnect_delay)

    async def _serve(self, connection) -> None:
        """Pump one connection until it closes."""
        self.attach(connection)
        dispatch = asyncio.create_task(self._dispatch_loop())
        receive = asyncio.create_task(self._receive_loop(connection))

        try:
            done, _ = await asyncio.wait({dispatch, receive}, return_when=asyncio.FIRST_COMPLETED)
            if dispatch not in done:
                # let frames received before the close be handled
                await asyncio.wait({dispatch})
        finally:
            for task in (dispatch, receive):
                if not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass

        if not dispatch.cancelled():
            dispatch.result()

    async def _receive_loop(self, connection) -> None:
        try:
            async for frame in connection.frames():
                await self.inbox.put((_HUB, frame))
        except (TransportError, OSError, RuntimeError) as e:
            logger.warning(f"Connection to hub lost: {e}")
        finally:
            self.inbox.put_nowait((_CLOSED, None))

    async def _dispatch_loop(self) -> None:
        while True:
            kind, item = await self.inbox.get()
            if kind == _CLOSED:
                return
            try:
                if kind == _HUB:
                    await self.handle_frame(item)
                else:
                    await self.handle_local_event(item)
            except (asyncio.CancelledError, WatchError):
                raise
            except TransportError as e:
                logger.warning(f"Send to hub failed: {e.message}")
            except Exception as e:
                logger.error(f"Error dispatching {kind} item: {e}", exc_info=True)

    def attach(self, connection) -> None:
        """Bind a freshly opened connection and wait for the hub state."""
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self.connection = connection
        self.inbox = asyncio.Queue()
        self.pending.clear()
        self.renames.clear()
        self.state = EdgeState.INITIAL_SYNC

    async def _disconnect(self, connection) -> None:
        await self.leave_steady()
        self.pending.clear()
        self.renames.clear()
        self.connection = None
        self.state = EdgeState.CONNECTING
        try:
            await connection.close()
        except Exception as e:
            logger.debug(f"Error closing connection: {e}")

    async def send(self, name: str, payload: BaseModel) -> None:
        if self.connection is None:
            raise TransportError("Not connected to hub")
        await self.connection.send(name, payload)

    async def handle_frame(self, frame: str) -> None:
        """Decode one hub frame; malformed frames are reported back."""
        try:
            name, payload = decode_message(frame)
        except ProtocolError as e:
            logger.warning(f"Protocol error from hub: {e.message}")
            await self.send(OPERATION_ERROR, error_message(e.message, e.operation, e.path))
            return
        await self.handle_hub_message(name, payload)

    async def handle_hub_message(self, name: str, payload: BaseModel) -> None:
        if name == STATE:
            await self.reconcile(payload.entries)
        elif name == CHANGE:
            await self.on_hub_change(payload)
        elif name == CONTENT:
            await self.on_content(payload)
        elif name == OPERATION_ERROR:
            await self.on_operation_error(payload)
        else:
            logger.warning(f"Unexpected message from hub: {name}")
            await self.send(OPERATION_ERROR, error_message(f"Unexpected message: {name}", name))

    async def reconcile(self, entries: List[FsEntryModel]) -> None:
        """
        Bring the local root in line with a hub snapshot.

        Local entries the hub lacks (by path and kind) are removed, hub
        directories are created and every hub file is requested. The edge
        enters Steady state once every request is answered.
        """
        await self.leave_steady()
        self.state = EdgeState.INITIAL_SYNC
        self.pending.clear()

        hub_entries = []
        for model in entries:
            try:
                path = normalize_relative(model.path, STATE)
            except ProtocolError as e:
                logger.warning(f"Skipping invalid hub entry: {e.message}")
                continue
            if not is_hidden(path):
                hub_entries.append((path, EntryKind(model.type)))

        hub_keys = set(hub_entries)
        local_entries = await asyncio.to_thread(build_snapshot, self.root)

        removed: List[str] = []
        for entry in local_entries:
            if (entry.path, entry.kind) in hub_keys:
                continue
            if any(entry.path.startswith(r + '/') for r in removed):
                continue
            await asyncio.to_thread(fs_ops.remove_path, self.root, entry.path)
            removed.append(entry.path)
            logger.info(f"Removed local-only {entry.kind.value}: {entry.path}")

        files = []
        for path, kind in hub_entries:
            if kind == EntryKind.DIRECTORY:
                await asyncio.to_thread(fs_ops.make_directory, self.root, path)
            else:
                files.append(path)

        self.pending.update(files)
        logger.info(
            f"Initial sync: {len(hub_entries)} hub entries, {len(removed)} removed, "
            f"{len(files)} content queries"
        )
        for path in files:
            await self.send(CONTENT_QUERY, ContentQueryPayload(path=path))

        await self._check_sync_complete()

    async def _check_sync_complete(self) -> None:
        if self.state == EdgeState.INITIAL_SYNC and not self.pending:
            logger.info("Initial sync complete")
            await self.enter_steady()

    async def on_content(self, payload: ContentPayload) -> None:
        """Write file content answered by the hub."""
        path = payload.path
        try:
            path = normalize_relative(path, CONTENT)
            data = decode_content(payload.content, CONTENT, path)
            self._register_parents(path)
            self.ledger.register(OperationKey(OperationFamily.WRITE, path), Direction.INBOUND)
            await asyncio.to_thread(fs_ops.write_file, self.root, path, data)
            logger.info(f"File synced from hub: {path}")
            if self.state == EdgeState.STEADY:
                self.modes.record(path)
        except SyncException as e:
            logger.error(f"Error writing content for {path}: {e.message}")
        finally:
            self.pending.discard(path)
            await self._check_sync_complete()

    async def on_operation_error(self, payload: OperationErrorPayload) -> None:
        logger.warning(
            f"Hub reported error: {payload.message} "
            f"[operation={payload.operation}, path={payload.path}]"
        )
        if payload.operation == CONTENT_QUERY and payload.path in self.pending:
            self.pending.discard(payload.path)
            await self._check_sync_complete()
        elif payload.operation == "rename" and payload.path in self.renames:
            await self._resend_tree(self.renames.pop(payload.path))

    async def _resend_tree(self, path: str) -> None:
        """
        Send a local entry and everything below it as plain creations.

        Used when the hub could not apply a rename, typically because the
        source never reached it.
        """
        full_path = self.root.joinpath(*path.split('/'))
        if not full_path.is_dir():
            logger.info(f"Rename rejected by hub, sending {path} as a write")
            await self._emit_write(path)
            return

        entries = await asyncio.to_thread(build_snapshot, self.root, path)
        logger.info(f"Rename rejected by hub, sending {path} as {len(entries) + 1} creation(s)")
        await self._emit_mkdir(path)
        for entry in entries:
            if entry.is_directory:
                await self._emit_mkdir(entry.path)
            else:
                await self._emit_write(entry.path)

    async def on_hub_change(self, payload: ChangePayload) -> None:
        """Apply a change broadcast by the hub unless it echoes our own emission."""
        try:
            path = normalize_relative(payload.path, CHANGE)
        except ProtocolError as e:
            await self.send(OPERATION_ERROR, error_message(e.message, CHANGE, payload.path))
            return

        kind = _CHANGE_KINDS[payload.event]
        key = key_for_change(ChangeEvent(kind=kind, path=path))
        if self.ledger.is_active(key, Direction.OUTBOUND):
            logger.debug(f"Ignoring echo of own {payload.event} {path}")
            return

        try:
            await self._apply_change(kind, path, payload)
        except SyncException as e:
            logger.error(f"Error applying {payload.event} {path}: {e.message}")
            await self.send(OPERATION_ERROR, error_message(e.message, payload.event, path))

    async def _apply_change(self, kind: ChangeKind, path: str, payload: ChangePayload) -> None:
        if kind == ChangeKind.CHMOD:
            if payload.mode is None:
                raise ProtocolError("chmod requires mode", "chmod", path)
            if not self.root.joinpath(*path.split('/')).exists():
                # chmod broadcasts can overtake the add of a new file
                logger.info(f"Skipping chmod for path not present locally: {path}")
                return
            # inotify reports attribute changes as modifications
            self.ledger.register_all(
                [OperationKey(OperationFamily.CHMOD, path), OperationKey(OperationFamily.WRITE, path)],
                Direction.INBOUND
            )
            await asyncio.to_thread(fs_ops.change_mode, self.root, path, payload.mode)
            self.modes.set(path, payload.mode & PERMISSION_BITS_MASK)
            logger.info(f"Chmod {payload.mode:o} applied to {path}")

        elif kind in (ChangeKind.ADDED, ChangeKind.MODIFIED):
            if payload.content is None:
                logger.warning(f"Skipping {payload.event} without content: {path}")
                return
            data = decode_content(payload.content, payload.event, path)
            self._register_parents(path)
            self.ledger.register(OperationKey(OperationFamily.WRITE, path), Direction.INBOUND)
            await asyncio.to_thread(fs_ops.write_file, self.root, path, data)
            self.modes.record(path)
            logger.info(f"File {'added' if kind == ChangeKind.ADDED else 'updated'} from hub: {path}")

        elif kind in (ChangeKind.DELETED, ChangeKind.DIR_DELETED):
            descendants = await asyncio.to_thread(snapshot_paths, self.root, path)
            self.ledger.register_all(
                [OperationKey(OperationFamily.DELETE, p) for p in [path] + descendants],
                Direction.INBOUND
            )
            await asyncio.to_thread(fs_ops.remove_path, self.root, path)
            self.modes.forget(path)
            logger.info(f"Removed from hub change: {path}")

        elif kind == ChangeKind.DIR_ADDED:
            self._register_parents(path)
            self.ledger.register(OperationKey(OperationFamily.MKDIR, path), Direction.INBOUND)
            await asyncio.to_thread(fs_ops.make_directory, self.root, path)
            self.modes.record(path)
            logger.info(f"Directory created from hub: {path}")

    def _register_parents(self, path: str) -> None:
        for parent in fs_ops.missing_directories(self.root, path):
            self.ledger.register(OperationKey(OperationFamily.MKDIR, parent), Direction.INBOUND)

    async def handle_local_event(self, event: ChangeEvent) -> None:
        """Turn a local change into hub operations, skipping echoes of applies."""
        if self.state != EdgeState.STEADY:
            logger.debug(f"Ignoring local {event.kind.value} {event.path} in {self.state.value} state")
            return

        if self.ledger.is_active(key_for_change(event), Direction.INBOUND):
            logger.debug(f"Suppressed echo of applied {event.kind.value} {event.path}")
            return

        path = event.path

        if event.kind in (ChangeKind.ADDED, ChangeKind.MODIFIED):
            await self._emit_write(path)

        elif event.kind in (ChangeKind.DELETED, ChangeKind.DIR_DELETED):
            self.modes.forget(path)
            await self._emit(
                OperationPayload(operation="delete", path=path),
                [OperationKey(OperationFamily.DELETE, path)]
            )

        elif event.kind == ChangeKind.DIR_ADDED:
            await self._emit_mkdir(path)

        elif event.kind == ChangeKind.RENAMED:
            dest_path = event.dest_path
            created = OperationFamily.MKDIR if (self.root / dest_path).is_dir() else OperationFamily.WRITE
            self.modes.move(path, dest_path)
            self.renames.pop(path, None)
            self.renames[path] = dest_path
            while len(self.renames) > _MAX_TRACKED_RENAMES:
                self.renames.popitem(last=False)
            await self._emit(
                OperationPayload(operation="rename", path=path, new_path=dest_path),
                [
                    OperationKey(OperationFamily.RENAME, path),
                    OperationKey(OperationFamily.DELETE, path),
                    OperationKey(created, dest_path),
                ]
            )

        elif event.kind == ChangeKind.CHMOD:
            await self._emit(
                OperationPayload(operation="chmod", path=path, mode=event.mode),
                [OperationKey(OperationFamily.CHMOD, path)]
            )

    async def _emit_write(self, path: str) -> None:
        data = await asyncio.to_thread(fs_ops.read_file, self.root, path)
        if data is None:
            logger.debug(f"File vanished before it could be sent: {path}")
            return
        await self._emit(
            OperationPayload(operation="write", path=path, content=encode_content(data)),
            [OperationKey(OperationFamily.WRITE, path)]
        )
        await self._emit_mode(path)

    async def _emit_mkdir(self, path: str) -> None:
        await self._emit(
            OperationPayload(operation="mkdir", path=path),
            [OperationKey(OperationFamily.MKDIR, path)]
        )
        await self._emit_mode(path)

    async def _emit_mode(self, path: str) -> None:
        mode = self.modes.observe(path)
        if mode is not None:
            await self._emit(
                OperationPayload(operation="chmod", path=path, mode=mode),
                [OperationKey(OperationFamily.CHMOD, path)]
            )

    async def _emit(self, payload: OperationPayload, keys: List[OperationKey]) -> None:
        self.ledger.register_all(keys, Direction.OUTBOUND)
        await self.send(OPERATION, payload)
        logger.info(f"Sent {payload.operation} {payload.path}")

    async def poll_modes(self) -> int:
        """
        Run one permission poll and queue a Chmod event per drift.

        Returns:
            Number of events queued
        """
        events = await asyncio.to_thread(self.modes.poll)
        for event in events:
            await self.inbox.put((_LOCAL, event))
        return len(events)

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_modes()
            except Exception as e:
                logger.error(f"Mode poll failed: {e}", exc_info=True)

    def _on_watcher_event(self, event: ChangeEvent) -> None:
        """Hand a change source event to the dispatch loop (observer thread)."""
        inbox = self.inbox
        if self._loop is None or inbox is None:
            return
        self._loop.call_soon_threadsafe(inbox.put_nowait, (_LOCAL, event))

    async def enter_steady(self) -> None:
        """
        Warm the mode cache and start watching the root.

        Raises:
            WatchError: If the change source cannot be started
        """
        entries = await asyncio.to_thread(build_snapshot, self.root)
        await asyncio.to_thread(self.modes.warm, [entry.path for entry in entries])

        if self.watch:
            self.change_source = ChangeSource(self.root, self._on_watcher_event)
            await asyncio.to_thread(self.change_source.start)
            self._poll_task = asyncio.create_task(self._poll_loop())

        self.state = EdgeState.STEADY
        logger.info(f"Edge in steady state [root={self.root}, cached_modes={len(self.modes)}]")

    async def leave_steady(self) -> None:
        """Stop the change source and the poll loop."""
        if self.change_source:
            await asyncio.to_thread(self.change_source.stop)
            self.change_source = None

        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
