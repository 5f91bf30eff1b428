"""
Shared fixtures for relay tests.

FakeWebSocket stands in for a websockets ServerConnection: it records sent
frames, close requests and transport aborts, and hands out pong waiters that
the test resolves explicitly.
"""

import asyncio
import json
from typing import Any, List, Optional
from unittest.mock import MagicMock

import pytest

from rfid_relay.api.connection_manager import ConnectionManager, RelayConnection
from rfid_relay.database.tag_store import MemoryTagStore
from rfid_relay.api.tag_enrichment import TagEnrichmentService
from rfid_relay.api.message_router import MessageRouter


class FakeWebSocket:
    """Minimal async WebSocket double"""

    def __init__(self, remote_address=("192.168.1.100", 50000)):
        self.remote_address = remote_address
        self.sent: List[Any] = []
        self.close_calls: List[tuple] = []
        self.transport = MagicMock()
        self.send_error: Optional[BaseException] = None
        self.send_delay: float = 0.0
        self.ping_error: Optional[BaseException] = None
        self.pong_waiters: List[asyncio.Future] = []

    async def send(self, payload: str):
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(json.loads(payload))

    async def close(self, code: int = 1000, reason: str = ""):
        self.close_calls.append((code, reason))

    async def ping(self):
        if self.ping_error is not None:
            raise self.ping_error
        waiter = asyncio.get_running_loop().create_future()
        self.pong_waiters.append(waiter)
        return waiter

    def answer_pings(self):
        for waiter in self.pong_waiters:
            if not waiter.done():
                waiter.set_result(0.001)

    @property
    def aborted(self) -> bool:
        return self.transport.abort.called

    def sent_of_type(self, message_type: str) -> List[dict]:
        return [m for m in self.sent if m.get("type") == message_type]


@pytest.fixture
def mock_logger():
    """Create a mock structured logger to capture log calls."""
    logger = MagicMock()
    logger.info = MagicMock()
    logger.warning = MagicMock()
    logger.error = MagicMock()
    logger.debug = MagicMock()
    return logger


@pytest.fixture
def make_connection():
    """Factory: RelayConnection backed by a FakeWebSocket"""
    counter = {"n": 0}

    def _make(client_id: Optional[str] = None) -> RelayConnection:
        counter["n"] += 1
        websocket = FakeWebSocket(remote_address=("10.0.0.%d" % counter["n"], 40000 + counter["n"]))
        return RelayConnection(
            client_id=client_id or "client-%d" % counter["n"],
            websocket=websocket,
            ip_address=websocket.remote_address[0]
        )

    return _make


@pytest.fixture
def connection_manager(mock_logger):
    return ConnectionManager(send_timeout_seconds=0.5, logger=mock_logger)


@pytest.fixture
def tag_store():
    return MemoryTagStore()


@pytest.fixture
def tag_enrichment(tag_store, mock_logger):
    return TagEnrichmentService(tag_store, auto_register=True, name_max_length=40, logger=mock_logger)


@pytest.fixture
def message_router(connection_manager, tag_enrichment, mock_logger):
    return MessageRouter(connection_manager, tag_enrichment, logger=mock_logger)
