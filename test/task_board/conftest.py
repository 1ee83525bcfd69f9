"""
Shared fixtures for the task board test suite.

Provides isolated temporary databases, fake server-side sockets that record
what the dispatcher sends, and an in-process loopback transport that lets a
real BoardClient talk to a real BoardSocketHandler without a network.
"""

import asyncio
import json
import os
import sys
from typing import Any, Callable, Dict, List, Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from task_board.api import BoardServer
from task_board.client import BoardClient
from task_board.config import BoardSettings
from task_board.database import BoardDatabase
from task_board.service import BoardService
from task_board.sessions import SessionRegistry
from task_board.snapshot_cache import SnapshotCache


@pytest.fixture
def db_path(tmp_path):
    """Unique database file per test."""
    return str(tmp_path / "test_board.db")


@pytest.fixture
def database(db_path):
    db = BoardDatabase(db_path)
    yield db
    db.close()


@pytest.fixture
def sessions(database):
    return SessionRegistry(database)


@pytest.fixture
def service(database):
    return BoardService(database)


@pytest.fixture
def alice(sessions):
    return sessions.register("alice", "secret")


@pytest.fixture
def bob(sessions):
    return sessions.register("bob", "secret")


@pytest.fixture
def carol(sessions):
    return sessions.register("carol", "secret")


class FakeSocket:
    """Server-side socket double recording every frame sent to it."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[str] = []

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)

    @property
    def frames(self) -> List[Dict[str, Any]]:
        return [json.loads(message) for message in self.sent]

    def events(self, name: str) -> List[Dict[str, Any]]:
        return [frame for frame in self.frames if frame["event"] == name]


_CLOSED = object()


class LoopbackTransport:
    """
    Client transport wired straight into a BoardSocketHandler.

    Acts as the client's transport (``send``/``close``/async iteration) and
    as the server's TextSocket (``send_text``) at the same time.
    """

    def __init__(self, server: "LoopbackServer"):
        self.server = server
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.connection_id: Optional[str] = None
        self.held: List[str] = []

    async def open(self) -> None:
        self.connection_id = await self.server.board.socket_handler.connect(self)

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise ConnectionError("transport closed")
        await self.incoming.put(data)

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("transport closed")
        if self.server.hold_requests:
            self.held.append(message)
            return
        await self.server.board.socket_handler.handle_message(self.connection_id, message)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        message = await self.incoming.get()
        if message is _CLOSED:
            raise StopAsyncIteration
        return message

    async def close(self) -> None:
        await self.drop()

    async def drop(self) -> None:
        """Simulate the network going away under both ends."""
        if self.closed:
            return
        self.closed = True
        self.incoming.put_nowait(_CLOSED)
        await self.server.board.socket_handler.disconnect(self.connection_id)


class LoopbackServer:
    """A real BoardServer reachable through LoopbackTransport."""

    def __init__(self, db_path: str, enrollment_policy: str = "auto_enroll"):
        self.board = BoardServer.build(BoardSettings(database_path=db_path, enrollment_policy=enrollment_policy))
        self.transports: List[LoopbackTransport] = []
        self.down = False
        self.hold_requests = False
        self.connect_attempts = 0

    async def transport_factory(self, url: str) -> LoopbackTransport:
        self.connect_attempts += 1
        if self.down:
            raise ConnectionRefusedError("server unreachable")
        transport = LoopbackTransport(self)
        await transport.open()
        self.transports.append(transport)
        return transport

    async def drop_all(self) -> None:
        for transport in list(self.transports):
            await transport.drop()

    def close(self) -> None:
        self.board.close()


@pytest.fixture
def loopback_server(db_path):
    server = LoopbackServer(db_path)
    yield server
    server.close()


def make_recording_sleep(delays: List[float]):
    """Backoff sleep that records the requested delay and only yields."""

    async def _sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    return _sleep


def make_client(server: LoopbackServer, cache_dir: Optional[str] = None, **kwargs) -> BoardClient:
    """BoardClient connected through the loopback transport."""
    cache = SnapshotCache(cache_dir) if cache_dir else None
    kwargs.setdefault("request_timeout", 2.0)
    kwargs.setdefault("sleep", make_recording_sleep([]))
    return BoardClient(
        url="loopback://board",
        cache=cache,
        transport_factory=server.transport_factory,
        **kwargs,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def settle() -> None:
    """Let queued frames be processed by every reader task."""
    for _ in range(20):
        await asyncio.sleep(0)
