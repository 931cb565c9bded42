"""Connected edge sessions and isolated broadcast fan-out."""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

from common.logging_config import get_logger
from common.protocol import encode_message

logger = get_logger(__name__)

_CLOSE = None


class Session:
    """
    One connected edge.

    Outgoing frames go through an unbounded outbox drained by a dedicated
    writer task, so a slow peer never holds up the sender.
    """

    def __init__(self, session_id: str, send_text: Callable[[str], Awaitable[None]]):
        """
        Initialize session.

        Args:
            session_id: Unique connection identifier
            send_text: Coroutine function that writes one text frame to the peer
        """
        self.session_id = session_id
        self._send_text = send_text
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def send(self, name: str, payload: BaseModel) -> bool:
        """
        Queue a message for delivery.

        Returns:
            False if the session is already closed
        """
        if self.closed:
            return False
        self.outbox.put_nowait(encode_message(name, payload))
        return True

    async def run_writer(self) -> None:
        """Deliver queued frames until closed or the peer fails."""
        while True:
            frame = await self.outbox.get()
            if frame is _CLOSE:
                break
            try:
                await self._send_text(frame)
            except Exception as e:
                logger.warning(f"Send failed, closing session [session_id={self.session_id}]: {e}")
                self.closed = True
                break

    def close(self) -> None:
        """Stop accepting messages and let the writer exit."""
        if self.closed:
            return
        self.closed = True
        self.outbox.put_nowait(_CLOSE)


class SessionRegistry:
    """Registry for tracking connected edge sessions"""

    def __init__(self):
        self.sessions: Dict[str, Session] = {}
        self.lock = asyncio.Lock()

    async def add(self, session: Session) -> None:
        """Register a session"""
        async with self.lock:
            self.sessions[session.session_id] = session
        logger.info(f"Session registered [session_id={session.session_id}] total={len(self.sessions)}")

    async def remove(self, session_id: str) -> Optional[Session]:
        """Unregister a session"""
        async with self.lock:
            session = self.sessions.pop(session_id, None)
        if session:
            logger.info(f"Session removed [session_id={session_id}] total={len(self.sessions)}")
        return session

    async def get_all(self) -> List[Session]:
        """Get all open sessions"""
        async with self.lock:
            return [s for s in self.sessions.values() if not s.closed]

    async def broadcast(
        self,
        name: str,
        payload: BaseModel,
        exclude: Optional[str] = None
    ) -> int:
        """
        Queue a message for every open session.

        A failure for one session is logged and does not affect the others.

        Args:
            name: Message name
            payload: Payload model
            exclude: Session id that should not receive the message

        Returns:
            Number of sessions the message was queued for
        """
        delivered = 0
        for session in await self.get_all():
            if session.session_id == exclude:
                continue
            try:
                if session.send(name, payload):
                    delivered += 1
            except Exception as e:
                logger.warning(f"Broadcast to {session.session_id} failed: {e}")
        return delivered

    def __len__(self) -> int:
        return len(self.sessions)
