"""Shared fixtures: an in-memory push channel and a wired-up controller."""
import asyncio
import json

import pytest

from chatstream import database
from chatstream.session_state import SessionState
from chatstream.stream_controller import StreamController
from chatstream.transcript import ConversationTranscript

_END = object()


class FakeConnection:
    """One opened push channel; the test pushes lines into it."""

    def __init__(self, conversation_id, prompt, token, thinking):
        self.conversation_id = conversation_id
        self.prompt = prompt
        self.token = token
        self.thinking = thinking
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def send(self, **frame):
        self._queue.put_nowait(json.dumps(frame))

    def send_raw(self, line: str):
        self._queue.put_nowait(line)

    def end(self):
        self._queue.put_nowait(_END)

    def fail(self, exc: BaseException):
        self._queue.put_nowait(exc)

    async def lines(self):
        try:
            while True:
                item = await self._queue.get()
                if item is _END:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.closed = True


class FakeChannel:
    def __init__(self):
        self.connections: list[FakeConnection] = []

    def open(self, conversation_id, *, prompt, token, thinking):
        connection = FakeConnection(conversation_id, prompt, token, thinking)
        self.connections.append(connection)
        return connection.lines()

    async def wait_for_connection(self, count: int = 1) -> FakeConnection:
        await until(lambda: len(self.connections) >= count)
        return self.connections[count - 1]


async def until(predicate, timeout: float = 2.0):
    """Yield to the event loop until ``predicate()`` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def state():
    return SessionState(credential="secret-token", active_conversation_id=7)


@pytest.fixture
def transcript():
    return ConversationTranscript()


@pytest.fixture
def controller(state, transcript, channel):
    return StreamController(state, transcript, channel, idle_timeout=0)


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Point the development backend at a throwaway database."""
    path = tmp_path / "chatstream-test.db"
    monkeypatch.setattr(database, "DATABASE_PATH", path)
    return path
