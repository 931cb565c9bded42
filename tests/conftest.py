"""Shared pytest fixtures for all tests."""

from typing import List, Tuple

import pytest
from pydantic import BaseModel

from common.exceptions import TransportError
from common.protocol import decode_message, encode_message
from hub.session import Session


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeConnection:
    """
    In-memory stand-in for HubConnection.

    Sent messages are round-tripped through the wire codec and recorded.
    """

    def __init__(self, address: str = "fake", fail_connect: bool = False, frames: List[str] = None):
        self.address = address
        self.fail_connect = fail_connect
        self.sent: List[Tuple[str, BaseModel]] = []
        self._frames = list(frames or [])
        self.closed = False

    async def connect(self) -> None:
        if self.fail_connect:
            raise TransportError(f"connection refused: {self.address}")

    async def send(self, name: str, payload: BaseModel) -> None:
        self.sent.append(decode_message(encode_message(name, payload)))

    async def frames(self):
        for frame in self._frames:
            yield frame

    async def close(self) -> None:
        self.closed = True

    def names(self) -> List[str]:
        return [name for name, _ in self.sent]

    def operations(self) -> List[Tuple[str, str]]:
        return [(p.operation, p.path) for name, p in self.sent if name == "operation"]


def drain(session: Session) -> List[Tuple[str, BaseModel]]:
    """Pop every queued frame from a session outbox and decode it."""
    messages = []
    while not session.outbox.empty():
        frame = session.outbox.get_nowait()
        if frame is not None:
            messages.append(decode_message(frame))
    return messages


async def _discard(frame: str) -> None:
    return None


def make_session(session_id: str) -> Session:
    return Session(session_id, _discard)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def hub_root(tmp_path):
    """
    Create an empty hub root.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to the hub root directory
    """
    root = tmp_path / 'shared'
    root.mkdir()
    return root.resolve()


@pytest.fixture
def edge_root(tmp_path):
    """
    Create an empty edge root.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to the edge root directory
    """
    root = tmp_path / 'local'
    root.mkdir()
    return root.resolve()
