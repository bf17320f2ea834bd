"""
Gateway transport adapters.

This module implements the boundary between the correlation engine and the
network. A Transport opens a connection, sends text frames and reports four
signals to the listener bound to it:

- connection_opened()        The connection is ready for requests
- connection_closed(reason)  The connection has ended, fires once
- connection_error(error)    The transport failed, error is a GatewayTransportError
- frame_received(data)       One inbound frame, in arrival order

All four signals are coroutines and are awaited one at a time, opened first.
A listener must not block in them waiting for later frames.

Example usage:
async def main():
    transport = WebSocketTransport()
    transport.bind(listener)
    await transport.open("ws://localhost:8888")
    transport.send('{"id": 1, "command": "fetch_last_height", "params": []}')
    await transport.wait_closed()

asyncio.run(main())
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from ..exceptions import GatewayConnectionError, GatewaySendError, GatewayTransportError


class TransportListener(Protocol):
    def connection_opened(self) -> Awaitable[None]: ...
    def connection_closed(self, reason: Optional[str]) -> Awaitable[None]: ...
    def connection_error(self, error: GatewayTransportError) -> Awaitable[None]: ...
    def frame_received(self, data: str | bytes) -> Awaitable[None]: ...


class TransportConst:
    """Constants for transports"""
    OPEN_TIMEOUT = 10.0
    CLOSE_TIMEOUT = 5.0


class Transport(ABC):
    """Base class for everything that can carry gateway frames"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.listener: Optional[TransportListener] = None

    def bind(self, listener: TransportListener) -> None:
        """Attach the listener that receives this transport's signals"""
        self.listener = listener

    @abstractmethod
    async def open(self, uri: str) -> None:
        """Open the connection. Raises GatewayConnectionError on failure."""

    @abstractmethod
    def send(self, data: str) -> None:
        """Queue one frame. Must not block. Raises GatewaySendError if not open."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection"""

    @abstractmethod
    def is_open(self) -> bool:
        """Check if the transport can send"""

    async def wait_closed(self) -> None:
        """Wait until the connection has ended"""
        return None


class WebSocketTransport(Transport):
    """
    Transport over a single websocket connection.

    Sends are queued and written in order by a writer task, so send() never
    blocks. A reader task signals connection_opened(), then delivers every
    inbound message to the listener, and closes the socket when it ends. If
    the listener's connection_error() raises (the fail fast default), the
    reader task ends with that exception and wait_closed() re-raises it.
    """

    def __init__(self,
                 logger: Optional[logging.Logger] = None,
                 open_timeout: float = TransportConst.OPEN_TIMEOUT,
                 **connect_options: Any):
        super().__init__(logger)
        self.open_timeout = open_timeout
        self.connect_options = connect_options
        self.uri: Optional[str] = None
        self._ws = None
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None
        self._open = False
        self._ready = asyncio.Event()

    async def open(self, uri: str) -> None:
        if self.listener is None:
            raise RuntimeError("Transport has no listener, call bind() first")
        if self._open:
            raise GatewayConnectionError(f"Transport already open to {self.uri}")

        try:
            self._ws = await websockets.connect(uri, open_timeout=self.open_timeout, **self.connect_options)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self.logger.error(f"Failed to connect to gateway at {uri}: {e}")
            raise GatewayConnectionError(f"Failed to connect to {uri}: {e}") from e

        self.uri = uri
        self._open = True
        self.logger.info(f"Connected to gateway at {uri}")

        # The reader signals connection_opened before its first frame, so an
        # open hook that waits on a response is never starved of frames
        self._ready.clear()
        self._writer = asyncio.create_task(self._write_frames())
        self._reader = asyncio.create_task(self._read_frames())
        ready = asyncio.ensure_future(self._ready.wait())
        await asyncio.wait({self._reader, ready}, return_when=asyncio.FIRST_COMPLETED)
        ready.cancel()
        if not self._ready.is_set():
            # The open hook raised, so the reader has already ended
            await self._reader

    def send(self, data: str) -> None:
        if not self._open:
            raise GatewaySendError("Connection is not open")
        self._outbox.put_nowait(data)

    def is_open(self) -> bool:
        return self._open

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            # Errors surface through wait_closed(), not here
            await asyncio.wait({self._reader}, timeout=TransportConst.CLOSE_TIMEOUT)
        self._stop_writer()

    async def wait_closed(self) -> None:
        if self._reader is not None:
            await self._reader

    async def _read_frames(self):
        reason: Optional[str] = None
        try:
            await self.listener.connection_opened()
            self._ready.set()
            async for message in self._ws:
                self.logger.debug(f"Frame received: {message!r}")
                await self.listener.frame_received(message)
            reason = f"closed with code {self._ws.close_code}"
        except ConnectionClosedError as e:
            reason = str(e)
            self.logger.error(f"Gateway connection lost: {e}")
            await self.listener.connection_error(GatewayConnectionError(f"Connection lost: {e}"))
        finally:
            self._open = False
            self._stop_writer()
            # A listener that raised leaves the socket open
            await self._ws.close()
            self.logger.info(f"Gateway connection closed: {reason}")
            await self.listener.connection_closed(reason)

    async def _write_frames(self):
        while True:
            data = await self._outbox.get()
            try:
                await self._ws.send(data)
            except ConnectionClosed as e:
                # The reader reports the closure
                self.logger.error(f"Send failed, connection closed: {e}")
                return
            finally:
                self._outbox.task_done()

    def _stop_writer(self):
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
