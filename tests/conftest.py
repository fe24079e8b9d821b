"""
Shared fakes for the test suite.

The engine only talks to the data store through the ChangeSource contract and
to clients through the Connection contract, so both are replaced here by
in-memory doubles. No database or network is needed.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any
from typing import Callable
from typing import Optional

import pytest

from mongo_realtime.gate import Handshake


class FakeSource(object):
    """In-memory ChangeSource. `data` holds each collection newest first."""

    def __init__(self, data: Optional[dict[str, list[dict]]] = None) -> None:
        self.data: dict[str, list[dict]] = data if data is not None else {}
        self.fetches: list[str] = []
        self.pipelines: list[list[dict]] = []
        self.fetch_delay = 0.0
        self.fetch_error: Optional[Exception] = None
        self.feed_closed = False
        self._queue: Optional[asyncio.Queue] = None

    @property
    def queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    async def list_collections(self) -> list[str]:
        return sorted(self.data)

    async def fetch_snapshot(self, collection: str) -> list[dict]:
        self.fetches.append(collection)
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.fetch_error is not None:
            raise self.fetch_error
        return [dict(doc) for doc in self.data.get(collection, [])]

    @asynccontextmanager
    async def watch(self, pipeline: list[dict]):
        self.pipelines.append(pipeline)
        try:
            yield self._changes()
        finally:
            self.feed_closed = True

    async def _changes(self):
        while True:
            change = await self.queue.get()
            if change is None:
                return
            yield change

    def push(self, change: Optional[dict]) -> None:
        """Emit a change on the feed. None ends the feed."""
        self.queue.put_nowait(change)


class FakeConnection(object):
    """Connection recording everything sent to it."""

    def __init__(
        self,
        id_: str,
        handshake: Optional[Handshake] = None,
        topics: Optional[set[str]] = None,
        fail: bool = False,
    ) -> None:
        self.id = id_
        self.handshake = handshake if handshake is not None else Handshake()
        self.topics = set(topics or ())
        self.fail = fail
        self.sent: list[tuple[str, Any]] = []
        self.closed = False

    async def send(self, topic: str, payload: Any) -> None:
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.sent.append((topic, payload))

    async def close(self) -> None:
        self.closed = True

    def received(self, topic: str) -> list[Any]:
        return [payload for sent_topic, payload in self.sent if sent_topic == topic]

    def topics_received(self) -> list[str]:
        return [topic for topic, _ in self.sent]


def build_change(
    operation: str,
    collection: str,
    doc_id: Any = None,
    document: Optional[dict] = None,
    database: str = "app",
) -> dict:
    """Raw change stream document, shaped like the server sends them."""
    change: dict[str, Any] = {
        "operationType": operation,
        "ns": {"db": database, "coll": collection},
    }
    if doc_id is not None:
        change["documentKey"] = {"_id": doc_id}
    if document is not None:
        change["fullDocument"] = document
    return change


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def make_source() -> Callable[..., FakeSource]:
    return FakeSource


@pytest.fixture
def make_connection() -> Callable[..., FakeConnection]:
    return FakeConnection


@pytest.fixture
def make_change() -> Callable[..., dict]:
    return build_change
