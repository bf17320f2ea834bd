"""Pytest configuration and shared fixtures."""

import json
from typing import Iterable, Optional

import pytest
import pytest_asyncio

from darkgateway import GatewayClient, IdAllocator, Transport, GatewaySendError


class FakeTransport(Transport):
    """In-memory transport: records sent frames and lets tests inject inbound ones"""

    def __init__(self):
        super().__init__()
        self.sent: list[str] = []
        self.uri: Optional[str] = None
        self._open = False

    async def open(self, uri: str) -> None:
        self.uri = uri
        self._open = True
        await self.listener.connection_opened()

    def send(self, data: str) -> None:
        if not self._open:
            raise GatewaySendError("Connection is not open")
        self.sent.append(data)

    async def close(self) -> None:
        if self._open:
            self._open = False
            await self.listener.connection_closed("closed by client")

    def is_open(self) -> bool:
        return self._open

    # Test helpers

    async def inject(self, frame) -> None:
        data = frame if isinstance(frame, (str, bytes)) else json.dumps(frame)
        await self.listener.frame_received(data)

    async def drop(self, reason: str = "gone away") -> None:
        self._open = False
        await self.listener.connection_closed(reason)

    def requests(self) -> list[dict]:
        return [json.loads(s) for s in self.sent]

    def last_request(self) -> dict:
        return json.loads(self.sent[-1])


class SequenceAllocator(IdAllocator):
    """Hands out ids from a fixed list, ignoring what is in use"""

    def __init__(self, ids: Iterable[int]):
        super().__init__()
        self._ids = iter(ids)

    def allocate(self, in_use=()) -> int:
        return next(self._ids)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest_asyncio.fixture
async def client(transport):
    gw = await GatewayClient.create("ws://gateway.test", transport=transport)
    yield gw
    await gw.close()


@pytest.fixture
def response():
    """Build a response frame for the request sent at position index"""
    def build(transport: FakeTransport, result=None, error=None, index: int = -1) -> dict:
        request_id = transport.requests()[index]["id"]
        return {"id": request_id, "error": error, "result": [result]}
    return build
