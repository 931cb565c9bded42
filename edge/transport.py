"""WebSocket connection from an edge to the hub (aiohttp client)."""

import asyncio
from typing import AsyncIterator, Optional
from urllib.parse import urlsplit, urlunsplit

import aiohttp
from pydantic import BaseModel

from common.constants import SYNC_ENDPOINT_PATH, WEBSOCKET_HEARTBEAT_SECONDS
from common.exceptions import TransportError
from common.logging_config import get_logger
from common.protocol import encode_message

logger = get_logger(__name__)

_SCHEMES = {
    "http": "ws",
    "https": "wss",
    "ws": "ws",
    "wss": "wss",
}


def build_sync_url(address: str) -> str:
    """
    Derive the hub WebSocket URL from a user supplied address.

    Accepts 'http://host:port', 'ws://host:port[/path]' or a bare
    'host:port'. An address without a path gets the /sync endpoint.

    Raises:
        TransportError: If the address cannot be parsed
    """
    address = address.strip()
    if not address:
        raise TransportError("Hub address is empty")
    if "://" not in address:
        address = f"ws://{address}"

    parts = urlsplit(address)
    scheme = _SCHEMES.get(parts.scheme.lower())
    if scheme is None or not parts.netloc:
        raise TransportError(f"Unsupported hub address: {address}")

    path = parts.path if parts.path not in ("", "/") else SYNC_ENDPOINT_PATH
    return urlunsplit((scheme, parts.netloc, path, parts.query, ""))


class HubConnection:
    """
    One WebSocket connection to the hub.

    A new instance is created for every connection attempt.
    """

    def __init__(self, address: str, heartbeat: float = WEBSOCKET_HEARTBEAT_SECONDS):
        """
        Initialize connection.

        Args:
            address: Hub address (see build_sync_url)
            heartbeat: WebSocket ping interval in seconds
        """
        self.url = build_sync_url(address)
        self.heartbeat = heartbeat
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        """
        Open the WebSocket.

        Raises:
            TransportError: If the hub cannot be reached
        """
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=self.heartbeat)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await self._session.close()
            self._session = None
            raise TransportError(f"Failed to connect to {self.url}: {e}")
        logger.info(f"Connected to hub at {self.url}")

    async def send(self, name: str, payload: BaseModel) -> None:
        """
        Send one message to the hub.

        Raises:
            TransportError: If the connection is closed or the send fails
        """
        if not self.connected:
            raise TransportError(f"Not connected to {self.url}")
        try:
            await self._ws.send_str(encode_message(name, payload))
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
            raise TransportError(f"Failed to send {name} to {self.url}: {e}")

    async def frames(self) -> AsyncIterator[str]:
        """Yield text frames until the connection closes."""
        if self._ws is None:
            return
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    yield msg.data
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"Connection error from hub: {self._ws.exception()}")
                    break
                else:
                    logger.debug(f"Ignoring non-text frame from hub: {msg.type}")
        except aiohttp.ClientError as e:
            raise TransportError(f"Connection to {self.url} failed: {e}")

    async def close(self) -> None:
        """Close the WebSocket and its client session."""
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
