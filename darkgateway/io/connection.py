"""
Gateway correlation and dispatch engine.

This module contains the GatewayConnection class, which sends requests,
remembers who is waiting for each one, and routes every inbound frame to the
handler registered for it.

Terms:
- Dispatch = Register a handler for a new request id, then send the request
- Route = Match an inbound frame to its handler by request id or topic
- Hook = An overridable method reacting to a connection lifecycle signal

Example usage:
async def main():
    conn = await GatewayConnection.create("ws://localhost:8888")
    async with conn:
        response = await conn.request("fetch_last_height")
        print("Height:", response.value)

asyncio.run(main())
"""

import asyncio
import inspect
import logging
import traceback
from enum import Enum
from typing import Any, Callable, Optional, Self, Sequence

from colorama import Fore, Style

from .correlation import CorrelationTable, Handler, IdAllocator, ReclaimPolicy
from .envelope import Request, RequestKey, Response, TopicKey, parse_frame
from .transport import Transport, WebSocketTransport
from ..exceptions import (
    GatewayConnectionError, GatewaySendError, GatewayTimeoutError, GatewayTransportError,
    InvalidHandlerError, MalformedFrameError, UnroutableFrameError,
)


class ErrorStrategy(Enum):
    """How transport errors are handled"""
    FAIL_FAST = "fail_fast"  # on_error() hook, which re-raises by default
    HANDLER = "handler"      # Supplied error_handler callable


def check_handler(handler: Any, name: str = "handler") -> None:
    """Raise InvalidHandlerError unless handler can be called"""
    if not callable(handler):
        raise InvalidHandlerError(f"{name} is not callable: {handler!r}")


async def invoke_handler(fn: Callable[..., Any], *args) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class PendingRequest:
    """
    A dispatched request that has not been answered yet.

    The handle owns the deadline timer (if any) and can cancel the request,
    which removes its table entry so the callback never fires.
    """

    def __init__(self, connection: "GatewayConnection", request: Request, callback: Handler):
        self.connection = connection
        self.request = request
        self.callback = callback
        self.done = False
        self.cancelled = False
        self.abandoned = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._abandon_callbacks: list[Callable[[Exception], None]] = []
        # One bound method, registered in the table and compared by identity
        self.handler: Handler = self._deliver

    @property
    def id(self) -> int:
        return self.request.id

    @property
    def command(self) -> str:
        return self.request.command

    @property
    def key(self) -> RequestKey:
        return self.request.key

    def cancel(self) -> bool:
        """Withdraw the request. Returns False if it already completed."""
        if self.done or self.cancelled:
            return False
        self.cancelled = True
        self._stop_timer()
        self.connection._table.remove(self.key, self.handler)
        self.connection._forget(self)
        return True

    def add_abandon_callback(self, fn: Callable[[Exception], None]) -> None:
        self._abandon_callbacks.append(fn)

    def _start_timer(self, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(timeout, self._expire, timeout)

    def _stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _deliver(self, response: Response) -> Any:
        if self.cancelled:
            return None
        self.done = True
        self._stop_timer()
        self.connection._forget(self)
        # An awaitable result is run as a task by the router
        return self.callback(response)

    def _expire(self, timeout: float) -> None:
        self._timer = None
        if self.done or self.cancelled or not self.connection._table.remove(self.key, self.handler):
            return
        self.done = True
        self.connection._forget(self)
        self.connection.logger.warning(f"Request {self.id} ({self.command}) got no response after {timeout}s")
        error = GatewayTimeoutError(f"No response to {self.command} after {timeout}s")
        self.connection._call_handler(self.key, self.callback, Response(id=self.id, error=error))

    def _abandon(self, error: Exception) -> None:
        if self.done or self.cancelled:
            return
        self.abandoned = True
        self._stop_timer()
        for fn in self._abandon_callbacks:
            fn(error)

    def __repr__(self) -> str:
        state = "done" if self.done else "cancelled" if self.cancelled else "abandoned" if self.abandoned else "pending"
        return f"<PendingRequest {self.id} {self.command} {state}>"


class GatewayConnection:
    """
    Request: {"id": uint32, "command": str, "params": [...]}
    Response: {"id": uint32, "error": any, "result": [...]}
    Update: {"name": "update", "address": str, ...}

      - A handler is registered before its request is sent
      - Exactly one handler fires per routable frame
      - Malformed and unroutable frames are logged and dropped, never raised
      - Transport errors go to on_error(), which re-raises unless overridden
      - Sync handlers and hooks run in frame order. An awaitable they return runs
        as a tracked task, so it may await further responses (see drain())
    """

    def __init__(self,
                 transport: Transport,
                 handle_connect: Optional[Handler] = None,
                 *,
                 allocator: Optional[IdAllocator] = None,
                 reclaim_policy: ReclaimPolicy = ReclaimPolicy.KEEP,
                 error_strategy: ErrorStrategy = ErrorStrategy.FAIL_FAST,
                 error_handler: Optional[Handler] = None,
                 default_timeout: Optional[float] = None,
                 print_traffic: bool = False,
                 logger: Optional[logging.Logger] = None):
        if handle_connect is not None:
            check_handler(handle_connect, "handle_connect")
        if error_strategy is ErrorStrategy.HANDLER:
            check_handler(error_handler, "error_handler")
        if default_timeout is not None and default_timeout <= 0:
            raise ValueError("default_timeout must be positive")

        self.logger = logger or logging.getLogger(__name__)
        self.transport = transport
        self.handle_connect = handle_connect
        self.allocator = allocator or IdAllocator()
        self.reclaim_policy = reclaim_policy
        self.error_strategy = error_strategy
        self.error_handler = error_handler
        self.default_timeout = default_timeout
        self.print_traffic = print_traffic

        self._table = CorrelationTable(self.logger)
        self._pending: dict[int, PendingRequest] = {}
        self._tasks: set[asyncio.Future] = set()
        self._opened = False
        self._closed = False

        transport.bind(self)

    @classmethod
    async def create(cls, uri: str, handle_connect: Optional[Handler] = None,
                     transport: Optional[Transport] = None, **kwargs) -> Self:
        """Create a connection and open it to the gateway at uri"""
        self = cls(transport or WebSocketTransport(logger=kwargs.get("logger")), handle_connect, **kwargs)
        await self.transport.open(uri)
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def is_connected(self) -> bool:
        return self._opened and not self._closed and self.transport.is_open()

    async def close(self):
        """Close the connection"""
        await self.transport.close()

    async def wait_closed(self):
        """Wait for the connection to end. Re-raises a fail fast transport error."""
        await self.transport.wait_closed()

    async def drain(self):
        """Wait for async hooks and handlers that are still running"""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    @property
    def table(self) -> CorrelationTable:
        return self._table

    @property
    def pending(self) -> list[PendingRequest]:
        return list(self._pending.values())

    # ============================
    # LIFECYCLE HOOKS
    # ============================

    def on_open(self):
        """Called once when the connection is ready"""
        pass

    def on_close(self, reason: Optional[str]):
        """Called once when the connection has ended"""
        pass

    def on_error(self, error: GatewayTransportError):
        """Called on transport errors. Fails fast unless overridden."""
        raise error

    def on_message(self, data: str | bytes):
        """Called for every inbound frame, before routing"""
        pass

    def on_malformed(self, error: MalformedFrameError):
        """Called when an inbound frame could not be parsed"""
        pass

    def on_unroutable(self, error: UnroutableFrameError):
        """Called when an inbound frame has no registered handler"""
        pass

    # ============================
    # TRANSPORT SIGNALS
    # ============================

    async def connection_opened(self):
        if self._opened:
            return
        self._opened = True
        if self.handle_connect is not None:
            self._call_hook(self.handle_connect)
        self._call_hook(self.on_open)

    async def connection_closed(self, reason: Optional[str] = None):
        if self._closed:
            return
        self._closed = True
        self._teardown(reason)
        self._call_hook(self.on_close, reason)

    async def connection_error(self, error: GatewayTransportError):
        self.logger.error(f"Transport error: {error}")
        if self.error_strategy is ErrorStrategy.HANDLER:
            await invoke_handler(self.error_handler, error)
        else:
            await invoke_handler(self.on_error, error)

    async def frame_received(self, data: str | bytes):
        self._call_hook(self.on_message, data)
        if self.print_traffic:
            print(Fore.CYAN + f"RECV: {data if isinstance(data, str) else data.decode('utf-8', 'replace')}" + Style.RESET_ALL)
        self._route(data)

    # ============================
    # DISPATCH
    # ============================

    def dispatch(self, command: str, params: Sequence[Any], callback: Handler,
                 *, timeout: Optional[float] = None) -> PendingRequest:
        """
        Send a request and register callback to receive its Response.

        The callback is registered before the request is sent, so an immediate
        reply is always routable. If the transport refuses the send, the
        registration is withdrawn and GatewaySendError propagates.
        """
        check_handler(callback, "callback")
        if timeout is None:
            timeout = self.default_timeout

        request = Request(id=self.allocator.allocate(self._table.request_ids()), command=command, params=params)
        pending = PendingRequest(self, request, callback)

        displaced = self._pending.get(request.id)
        if displaced is not None:
            displaced._abandon(GatewayConnectionError(f"Request id {request.id} was reused"))
        self._table.register(request.key, pending.handler)
        self._pending[request.id] = pending

        wire = request.to_json()
        try:
            self.transport.send(wire)
        except GatewaySendError:
            self._table.remove(request.key, pending.handler)
            self._forget(pending)
            raise

        if self.print_traffic:
            print(Fore.MAGENTA + f"SEND: {wire}" + Style.RESET_ALL)
        self.logger.debug(f"Sent request {request.id}: {command} {list(request.params)}")

        if timeout is not None:
            pending._start_timer(timeout)
        return pending

    async def request(self, command: str, params: Sequence[Any] = (),
                      *, timeout: Optional[float] = None) -> Response:
        """Send a request and wait for its Response"""
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()

        def resolve(response: Response):
            if fut.done():
                return
            if isinstance(response.error, GatewayTimeoutError):
                fut.set_exception(response.error)
            else:
                fut.set_result(response)

        def fail(error: Exception):
            if not fut.done():
                fut.set_exception(error)

        pending = self.dispatch(command, params, resolve, timeout=timeout)
        pending.add_abandon_callback(fail)
        try:
            return await fut
        finally:
            if not fut.done() or fut.cancelled():
                pending.cancel()

    # ============================
    # SUBSCRIPTIONS
    # ============================

    def register_topic(self, target: str, handler: Handler) -> Optional[Handler]:
        """Route updates for target to handler, replacing any previous handler"""
        check_handler(handler, "handler")
        self.logger.debug(f"Registered update handler for {target}")
        return self._table.register(TopicKey.for_target(target), handler)

    def unregister_topic(self, target: str) -> bool:
        return self._table.remove(TopicKey.for_target(target))

    # ============================
    # ROUTING
    # ============================

    def _route(self, data: str | bytes):
        try:
            envelope = parse_frame(data)
        except MalformedFrameError as e:
            self.logger.warning(f"Dropping malformed frame: {e}")
            self._call_hook(self.on_malformed, e)
            return

        key = envelope.key
        handler = self._table.lookup(key)
        if handler is None:
            self.logger.warning(f"Handler not found for {key}")
            self._call_hook(self.on_unroutable, UnroutableFrameError(key, envelope))
            return

        self._call_handler(key, handler, envelope)

        # Reclaim only after the handler returns, and only if it didn't re-register the key
        if isinstance(key, RequestKey) and self.reclaim_policy is ReclaimPolicy.RECLAIM:
            self._table.remove(key, handler)

    # ============================
    # HANDLER TASKS
    # ============================

    def _call_hook(self, hook: Callable[..., Any], *args):
        """Call a hook. Errors raised before its first await propagate."""
        result = hook(*args)
        if inspect.isawaitable(result):
            self._spawn(result, getattr(hook, "__name__", repr(hook)))

    def _call_handler(self, key, handler: Handler, *args):
        """Call a handler, logging anything it raises"""
        try:
            result = handler(*args)
        except Exception as e:
            self.logger.error(f"Handler for {key} raised: {e}")
            self.logger.error(traceback.format_exc())
            return
        if inspect.isawaitable(result):
            self._spawn(result, f"Handler for {key}")

    def _spawn(self, awaitable, name: str):
        # Awaitables never run on the reader, so they can wait on further responses
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def done(task: asyncio.Future):
            self._tasks.discard(task)
            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                self.logger.error(f"{name} raised: {error}")
                self.logger.error("".join(traceback.format_exception(error)))

        task.add_done_callback(done)

    def _forget(self, pending: PendingRequest):
        if self._pending.get(pending.id) is pending:
            del self._pending[pending.id]

    def _teardown(self, reason: Optional[str]):
        error = GatewayConnectionError(f"Connection closed: {reason}" if reason else "Connection closed")
        pending = list(self._pending.values())
        self._pending.clear()
        self._table.clear()
        for p in pending:
            p._abandon(error)
        if pending:
            self.logger.info(f"Abandoned {len(pending)} pending request(s) on close")
