"""Unit tests for the dispatch and routing engine.

Tests the GatewayConnection including:
- Handler registration and dispatch ordering
- Frame routing, malformed and unroutable frames
- Lifecycle hooks and error strategies
- Cancellation, deadlines, reclaim policy and teardown
"""

import asyncio
import logging

import pytest

from conftest import FakeTransport, SequenceAllocator
from darkgateway import (
    ErrorStrategy, GatewayConnection, GatewayConnectionError, GatewaySendError,
    GatewayTimeoutError, GatewayTransportError, InvalidHandlerError, ReclaimPolicy,
    RequestKey, Response, TopicKey,
)


class RecordingConnection(GatewayConnection):
    """Connection that records every hook call"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.events: list[tuple] = []

    def on_open(self):
        self.events.append(("open",))

    def on_close(self, reason):
        self.events.append(("close", reason))

    def on_message(self, data):
        self.events.append(("message", data))

    def on_malformed(self, error):
        self.events.append(("malformed", error))

    def on_unroutable(self, error):
        self.events.append(("unroutable", error))

    def names(self) -> list[str]:
        return [e[0] for e in self.events]


async def connect(transport=None, cls=RecordingConnection, **kwargs):
    transport = transport or FakeTransport()
    conn = await cls.create("ws://gateway.test", transport=transport, **kwargs)
    return conn, transport


# =============================================================================
# Dispatch
# =============================================================================


class TestDispatch:
    @pytest.mark.asyncio
    async def test_request_envelope_sent(self):
        conn, transport = await connect(allocator=SequenceAllocator([7]))
        conn.dispatch("fetch_history", ["abc"], lambda r: None)
        assert transport.requests() == [{"id": 7, "command": "fetch_history", "params": ["abc"]}]

    @pytest.mark.asyncio
    async def test_handler_registered_before_send(self):
        seen = []

        class CheckingTransport(FakeTransport):
            def send(self, data):
                seen.append(len(self.listener.table))
                super().send(data)

        conn, transport = await connect(CheckingTransport())
        conn.dispatch("fetch_last_height", [], lambda r: None)
        assert seen == [1]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("callback", [None, 42, "handler", object()])
    async def test_non_callable_rejected(self, callback):
        conn, transport = await connect()
        with pytest.raises(InvalidHandlerError):
            conn.dispatch("fetch_last_height", [], callback)
        assert transport.sent == []
        assert len(conn.table) == 0

    @pytest.mark.asyncio
    async def test_send_failure_withdraws_registration(self):
        conn, transport = await connect()
        await transport.close()
        with pytest.raises(GatewaySendError):
            conn.dispatch("fetch_last_height", [], lambda r: None)
        assert len(conn.table) == 0
        assert conn.pending == []

    @pytest.mark.asyncio
    async def test_distinct_ids(self):
        conn, transport = await connect()
        for _ in range(1000):
            conn.dispatch("fetch_last_height", [], lambda r: None)
        ids = [r["id"] for r in transport.requests()]
        # A duplicate is possible in principle, the allocator avoids live ids
        assert len(set(ids)) >= len(ids) - 1

    @pytest.mark.asyncio
    async def test_id_collision_newest_wins(self):
        conn, transport = await connect(allocator=SequenceAllocator([5, 5]))
        first, second = [], []
        p1 = conn.dispatch("fetch_last_height", [], first.append)
        p2 = conn.dispatch("fetch_last_height", [], second.append)
        await transport.inject({"id": 5, "error": None, "result": [1]})
        assert first == []
        assert len(second) == 1
        assert p1.abandoned
        assert p2.done


# =============================================================================
# Routing
# =============================================================================


class TestRouting:
    @pytest.mark.asyncio
    async def test_response_reaches_callback_once(self):
        conn, transport = await connect(allocator=SequenceAllocator([7]))
        received = []
        conn.dispatch("fetch_last_height", [], received.append)
        await transport.inject({"id": 7, "error": None, "result": [12345]})
        assert len(received) == 1
        assert isinstance(received[0], Response)
        assert received[0].value == 12345

    @pytest.mark.asyncio
    async def test_async_callback_runs_as_task(self):
        conn, transport = await connect(allocator=SequenceAllocator([1]))
        received = []

        async def callback(response):
            await asyncio.sleep(0)
            received.append(response.value)

        conn.dispatch("fetch_last_height", [], callback)
        await transport.inject({"id": 1, "error": None, "result": [3]})
        await conn.drain()
        assert received == [3]

    @pytest.mark.asyncio
    async def test_async_callback_can_await_another_request(self):
        conn, transport = await connect(allocator=SequenceAllocator([1, 2]))
        headers = []

        async def chained(response):
            header = await conn.request("fetch_block_header", [response.value], timeout=1)
            headers.append(header.value)

        conn.dispatch("fetch_last_height", [], chained)
        await transport.inject({"id": 1, "error": None, "result": [100]})
        await asyncio.sleep(0)
        assert transport.last_request() == {"id": 2, "command": "fetch_block_header", "params": [100]}
        await transport.inject({"id": 2, "error": None, "result": ["00ff"]})
        await conn.drain()
        assert headers == ["00ff"]

    @pytest.mark.asyncio
    async def test_sync_callbacks_run_in_frame_order(self):
        conn, transport = await connect(allocator=SequenceAllocator([1, 2]))
        order = []
        conn.dispatch("fetch_last_height", [], lambda r: order.append(r.id))
        conn.dispatch("fetch_last_height", [], lambda r: order.append(r.id))
        await transport.inject({"id": 2, "error": None, "result": [1]})
        await transport.inject({"id": 1, "error": None, "result": [1]})
        assert order == [2, 1]

    @pytest.mark.asyncio
    async def test_async_callback_exception_logged(self, caplog):
        conn, transport = await connect(allocator=SequenceAllocator([1]))

        async def broken(response):
            raise RuntimeError("async boom")

        conn.dispatch("fetch_last_height", [], broken)
        with caplog.at_level(logging.ERROR):
            await transport.inject({"id": 1, "error": None, "result": [1]})
            await conn.drain()
        assert "async boom" in caplog.text
        assert "Traceback" in caplog.text

    @pytest.mark.asyncio
    async def test_keep_policy_leaves_entry(self):
        conn, transport = await connect(allocator=SequenceAllocator([7]))
        pending = conn.dispatch("fetch_last_height", [], lambda r: None)
        await transport.inject({"id": 7, "error": None, "result": [1]})
        assert RequestKey(7) in conn.table
        assert pending.done
        assert conn.pending == []

    @pytest.mark.asyncio
    async def test_reclaim_policy_removes_entry(self):
        conn, transport = await connect(allocator=SequenceAllocator([7]), reclaim_policy=ReclaimPolicy.RECLAIM)
        conn.dispatch("fetch_last_height", [], lambda r: None)
        await transport.inject({"id": 7, "error": None, "result": [1]})
        assert RequestKey(7) not in conn.table
        await transport.inject({"id": 7, "error": None, "result": [1]})
        assert conn.names()[-1] == "unroutable"

    @pytest.mark.asyncio
    async def test_reclaim_keeps_key_reregistered_by_callback(self):
        conn, transport = await connect(allocator=SequenceAllocator([7, 7]), reclaim_policy=ReclaimPolicy.RECLAIM)
        chained = []

        def first(response):
            conn.dispatch("fetch_block_header", [response.value], chained.append)

        conn.dispatch("fetch_last_height", [], first)
        await transport.inject({"id": 7, "error": None, "result": [100]})
        assert RequestKey(7) in conn.table
        await transport.inject({"id": 7, "error": None, "result": ["header"]})
        assert [r.value for r in chained] == ["header"]

    @pytest.mark.asyncio
    async def test_remote_error_passed_to_callback(self):
        conn, transport = await connect(allocator=SequenceAllocator([2]))
        received = []
        conn.dispatch("fetch_transaction", ["00"], received.append)
        await transport.inject({"id": 2, "error": "not_found", "result": [None]})
        assert received[0].error == "not_found"

    @pytest.mark.asyncio
    async def test_unroutable_response(self, caplog):
        conn, transport = await connect()
        with caplog.at_level(logging.WARNING):
            await transport.inject({"id": 99, "error": None, "result": [1]})
        assert conn.names() == ["open", "message", "unroutable"]
        assert conn.events[-1][1].key == RequestKey(99)
        assert "Handler not found" in caplog.text

    @pytest.mark.asyncio
    async def test_unroutable_update(self):
        conn, transport = await connect()
        await transport.inject({"name": "update", "address": "xyz", "height": 1})
        assert conn.events[-1][1].key == TopicKey("update.xyz")

    @pytest.mark.asyncio
    async def test_malformed_frame_dropped(self, caplog):
        conn, transport = await connect()
        with caplog.at_level(logging.WARNING):
            await transport.inject("}{ not json")
        assert conn.names() == ["open", "message", "malformed"]
        assert conn.events[1][1] == "}{ not json"
        assert "malformed" in caplog.text

    @pytest.mark.asyncio
    async def test_topic_handler_receives_update(self):
        conn, transport = await connect()
        updates = []
        conn.register_topic("abc", updates.append)
        await transport.inject({"name": "update", "address": "abc", "height": 5})
        assert updates[0].payload["height"] == 5
        assert conn.unregister_topic("abc")
        assert TopicKey.for_target("abc") not in conn.table

    @pytest.mark.asyncio
    async def test_handler_exception_does_not_stop_routing(self, caplog):
        conn, transport = await connect(allocator=SequenceAllocator([1, 2]))

        def broken(response):
            raise RuntimeError("boom")

        received = []
        conn.dispatch("fetch_last_height", [], broken)
        conn.dispatch("fetch_last_height", [], received.append)
        with caplog.at_level(logging.ERROR):
            await transport.inject({"id": 1, "error": None, "result": [1]})
            await transport.inject({"id": 2, "error": None, "result": [2]})
        assert "boom" in caplog.text
        assert received[0].value == 2


# =============================================================================
# Cancellation and deadlines
# =============================================================================


class TestPendingRequest:
    @pytest.mark.asyncio
    async def test_cancel_removes_entry(self):
        conn, transport = await connect(allocator=SequenceAllocator([4]))
        received = []
        pending = conn.dispatch("fetch_last_height", [], received.append)
        assert pending.cancel()
        assert not pending.cancel()
        await transport.inject({"id": 4, "error": None, "result": [1]})
        assert received == []
        assert conn.names()[-1] == "unroutable"

    @pytest.mark.asyncio
    async def test_cancel_after_delivery(self):
        conn, transport = await connect(allocator=SequenceAllocator([4]))
        pending = conn.dispatch("fetch_last_height", [], lambda r: None)
        await transport.inject({"id": 4, "error": None, "result": [1]})
        assert not pending.cancel()

    @pytest.mark.asyncio
    async def test_deadline_expires(self):
        conn, transport = await connect()
        received = []
        conn.dispatch("fetch_last_height", [], received.append, timeout=0.01)
        await asyncio.sleep(0.05)
        assert len(received) == 1
        assert isinstance(received[0].error, GatewayTimeoutError)
        assert len(conn.table) == 0

    @pytest.mark.asyncio
    async def test_deadline_callback_exception_logged(self, caplog):
        conn, transport = await connect()
        loop = asyncio.get_running_loop()
        loop_errors = []
        loop.set_exception_handler(lambda loop, context: loop_errors.append(context))

        def broken(response):
            raise RuntimeError("late boom")

        try:
            with caplog.at_level(logging.ERROR):
                conn.dispatch("fetch_last_height", [], broken, timeout=0.01)
                await asyncio.sleep(0.05)
        finally:
            loop.set_exception_handler(None)
        assert "late boom" in caplog.text
        assert loop_errors == []

    @pytest.mark.asyncio
    async def test_async_deadline_callback_tracked(self, caplog):
        conn, transport = await connect()
        received = []

        async def callback(response):
            received.append(response.error)
            raise RuntimeError("late async boom")

        with caplog.at_level(logging.ERROR):
            conn.dispatch("fetch_last_height", [], callback, timeout=0.01)
            await asyncio.sleep(0.05)
            await conn.drain()
        assert isinstance(received[0], GatewayTimeoutError)
        assert "late async boom" in caplog.text

    @pytest.mark.asyncio
    async def test_response_before_deadline(self):
        conn, transport = await connect(allocator=SequenceAllocator([8]), default_timeout=0.02)
        received = []
        conn.dispatch("fetch_last_height", [], received.append)
        await transport.inject({"id": 8, "error": None, "result": [1]})
        await asyncio.sleep(0.05)
        assert [r.value for r in received] == [1]

    @pytest.mark.asyncio
    async def test_default_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            GatewayConnection(FakeTransport(), default_timeout=0)


class TestRequest:
    @pytest.mark.asyncio
    async def test_request_returns_response(self):
        conn, transport = await connect(allocator=SequenceAllocator([3]))
        task = asyncio.create_task(conn.request("fetch_history", ["abc"]))
        await asyncio.sleep(0)
        await transport.inject({"id": 3, "error": None, "result": [["tx"]]})
        response = await task
        assert response.value == ["tx"]

    @pytest.mark.asyncio
    async def test_request_timeout(self):
        conn, transport = await connect()
        with pytest.raises(GatewayTimeoutError):
            await conn.request("fetch_last_height", timeout=0.01)

    @pytest.mark.asyncio
    async def test_cancelling_request_cancels_pending(self):
        conn, transport = await connect()
        task = asyncio.create_task(conn.request("fetch_last_height"))
        await asyncio.sleep(0)
        assert len(conn.table) == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(conn.table) == 0

    @pytest.mark.asyncio
    async def test_close_fails_waiting_request(self):
        conn, transport = await connect()
        task = asyncio.create_task(conn.request("fetch_last_height"))
        await asyncio.sleep(0)
        await transport.drop("server restart")
        with pytest.raises(GatewayConnectionError):
            await task


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_handle_connect_and_open_fire_once(self):
        connected = []
        conn, transport = await connect(handle_connect=lambda: connected.append(True))
        await conn.connection_opened()
        assert connected == [True]
        assert conn.names() == ["open"]
        assert conn.is_connected()

    @pytest.mark.asyncio
    async def test_handle_connect_must_be_callable(self):
        with pytest.raises(InvalidHandlerError):
            GatewayConnection(FakeTransport(), "not callable")

    @pytest.mark.asyncio
    async def test_close_fires_once_and_clears_table(self):
        conn, transport = await connect()
        pending = conn.dispatch("fetch_last_height", [], lambda r: None)
        conn.register_topic("abc", lambda u: None)
        await transport.drop("gone")
        await conn.connection_closed("again")
        assert conn.events[-1] == ("close", "gone")
        assert conn.names().count("close") == 1
        assert len(conn.table) == 0
        assert pending.abandoned
        assert not conn.is_connected()

    @pytest.mark.asyncio
    async def test_error_fails_fast_by_default(self):
        conn, transport = await connect()
        error = GatewayTransportError("socket reset")
        with pytest.raises(GatewayTransportError):
            await conn.connection_error(error)

    @pytest.mark.asyncio
    async def test_error_handler_strategy(self):
        errors = []
        conn, transport = await connect(error_strategy=ErrorStrategy.HANDLER, error_handler=errors.append)
        error = GatewayTransportError("socket reset")
        await conn.connection_error(error)
        assert errors == [error]

    @pytest.mark.asyncio
    async def test_error_handler_must_be_callable(self):
        with pytest.raises(InvalidHandlerError):
            GatewayConnection(FakeTransport(), error_strategy=ErrorStrategy.HANDLER)

    @pytest.mark.asyncio
    async def test_overridden_on_error(self):
        class Quiet(GatewayConnection):
            errors = []

            def on_error(self, error):
                self.errors.append(error)

        conn, transport = await connect(cls=Quiet)
        await conn.connection_error(GatewayTransportError("reset"))
        assert len(Quiet.errors) == 1

    @pytest.mark.asyncio
    async def test_async_on_open_can_await_request(self):
        class HeightOnOpen(GatewayConnection):
            heights = []

            async def on_open(self):
                response = await self.request("fetch_last_height", timeout=1)
                self.heights.append(response.value)

        conn, transport = await connect(cls=HeightOnOpen, allocator=SequenceAllocator([5]))
        await asyncio.sleep(0)
        assert transport.last_request()["command"] == "fetch_last_height"
        await transport.inject({"id": 5, "error": None, "result": [700000]})
        await conn.drain()
        assert HeightOnOpen.heights == [700000]
