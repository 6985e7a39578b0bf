"""
Session multiplexer tests.

The SSE side is driven through the raw ASGI interface with an in-memory
connection so frames, disconnects and write failures can be observed
directly.
"""

from uuid import UUID, uuid4

import anyio
from mcp import types
from mcp.shared.message import SessionMessage
from pydantic import ValidationError
import pytest

from codesearch_mcp.errors import SessionNotFound
from codesearch_mcp.transport.sessions import (
    KEEPALIVE_FRAME,
    Session,
    SessionRegistry,
    SessionTransport,
)

from conftest import FakeConnection, sse_scope, wait_until


PING = b'{"jsonrpc":"2.0","id":1,"method":"ping"}'


def request(request_id: int) -> bytes:
    return b'{"jsonrpc":"2.0","id":' + str(request_id).encode() + b',"method":"ping"}'


def reply(request_id) -> SessionMessage:
    return SessionMessage(
        types.JSONRPCMessage(types.JSONRPCResponse(jsonrpc="2.0", id=request_id, result={}))
    )


async def post(transport: SessionTransport, query: str, body: bytes = PING) -> int:
    """POST to the side-channel and return the response status."""
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/messages/",
        "root_path": "",
        "query_string": query.encode(),
        "headers": [(b"content-type", b"application/json")],
    }
    pending = [{"type": "http.request", "body": body, "more_body": False}]
    sent = []

    async def receive():
        if pending:
            return pending.pop(0)
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)

    await transport.handle_post_message(scope, receive, send)
    return sent[0]["status"]


async def post_into(statuses: list[int], transport: SessionTransport, query: str, body: bytes = PING):
    statuses.append(await post(transport, query, body))


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def transport(registry: SessionRegistry) -> SessionTransport:
    return SessionTransport("/messages/", registry, keepalive_interval=60)


class TestRegistry:
    @pytest.mark.asyncio
    async def test_register_get_remove(self, registry: SessionRegistry):
        inbound, _ = anyio.create_memory_object_stream(0)
        outbound, _ = anyio.create_memory_object_stream(0)
        session = Session(session_id=uuid4(), inbound=inbound, outbound=outbound)

        registry.register(session)
        assert registry.get(session.session_id) is session
        assert session.session_id in registry
        assert len(registry) == 1

        with pytest.raises(ValueError):
            registry.register(session)

        assert registry.remove(session.session_id) is session
        assert registry.remove(session.session_id) is None
        with pytest.raises(SessionNotFound):
            registry.get(session.session_id)

    @pytest.mark.asyncio
    async def test_session_close_is_idempotent(self):
        inbound, inbound_reader = anyio.create_memory_object_stream(0)
        outbound, _ = anyio.create_memory_object_stream(0)
        session = Session(session_id=uuid4(), inbound=inbound, outbound=outbound)

        session.close()
        session.close()

        assert session.closed
        assert session.cancel_scope.cancel_called
        with pytest.raises(anyio.EndOfStream):
            await inbound_reader.receive()


class TestConnect:
    @pytest.mark.asyncio
    async def test_endpoint_event_first(self, transport: SessionTransport, registry: SessionRegistry):
        conn = FakeConnection()

        async with transport.connect_sse(sse_scope(), conn.receive, conn.send):
            await wait_until(lambda: conn.frames)

            assert conn.status == 200
            assert conn.headers[b"content-type"].startswith(b"text/event-stream")
            assert conn.frames[0].startswith(b"event: endpoint")
            assert b"data: /messages/?session_id=" in conn.frames[0]
            assert UUID(hex=conn.session_id) in registry

    @pytest.mark.asyncio
    async def test_endpoint_includes_root_path(self, transport: SessionTransport):
        conn = FakeConnection()

        async with transport.connect_sse(sse_scope(root_path="/mcp"), conn.receive, conn.send):
            await wait_until(lambda: conn.frames)
            assert b"data: /mcp/messages/?session_id=" in conn.frames[0]

    @pytest.mark.asyncio
    async def test_rejects_non_http_scope(self, transport: SessionTransport):
        conn = FakeConnection()
        with pytest.raises(ValueError):
            async with transport.connect_sse({"type": "websocket"}, conn.receive, conn.send):
                pass

    @pytest.mark.asyncio
    async def test_two_sessions_are_isolated(
        self, transport: SessionTransport, registry: SessionRegistry
    ):
        conn_a, conn_b = FakeConnection(), FakeConnection()

        async with transport.connect_sse(sse_scope(), conn_a.receive, conn_a.send) as (
            read_a,
            write_a,
        ):
            async with transport.connect_sse(sse_scope(), conn_b.receive, conn_b.send) as (
                read_b,
                _,
            ):
                await wait_until(lambda: conn_a.frames and conn_b.frames)
                assert conn_a.session_id != conn_b.session_id
                assert len(registry) == 2

                statuses: list[int] = []
                async with anyio.create_task_group() as tg:
                    tg.start_soon(post_into, statuses, transport, f"session_id={conn_a.session_id}")
                    with anyio.fail_after(2):
                        received = await read_a.receive()
                        await write_a.send(reply(1))

                assert statuses == [202]
                assert isinstance(received, SessionMessage)
                assert received.message.root.method == "ping"
                with pytest.raises(anyio.WouldBlock):
                    read_b.receive_nowait()

    @pytest.mark.asyncio
    async def test_outbound_messages_are_message_events(self, transport: SessionTransport):
        conn = FakeConnection()
        response = types.JSONRPCMessage(types.JSONRPCResponse(jsonrpc="2.0", id=7, result={}))

        async with transport.connect_sse(sse_scope(), conn.receive, conn.send) as (_, write):
            await wait_until(lambda: conn.frames)
            with anyio.fail_after(2):
                await write.send(SessionMessage(response))
            await wait_until(lambda: len(conn.frames) >= 2)

        assert conn.frames[1].startswith(b"event: message")
        assert b'"id":7' in conn.frames[1]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_exit_closes_and_unregisters(
        self, transport: SessionTransport, registry: SessionRegistry
    ):
        conn = FakeConnection()

        async with transport.connect_sse(sse_scope(), conn.receive, conn.send):
            await wait_until(lambda: conn.frames)
            session_id = conn.session_id

        assert len(registry) == 0
        assert await post(transport, f"session_id={session_id}") == 404

    @pytest.mark.asyncio
    async def test_client_disconnect_closes_session(
        self, transport: SessionTransport, registry: SessionRegistry
    ):
        conn = FakeConnection()

        async with transport.connect_sse(sse_scope(), conn.receive, conn.send) as (read, _):
            await wait_until(lambda: conn.frames)
            conn.disconnect()

            with anyio.fail_after(2), pytest.raises(anyio.EndOfStream):
                await read.receive()
            assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_keepalive_frames_are_sent(self, registry: SessionRegistry):
        transport = SessionTransport("/messages/", registry, keepalive_interval=0.05)
        conn = FakeConnection()

        async with transport.connect_sse(sse_scope(), conn.receive, conn.send):
            await wait_until(lambda: conn.frames.count(KEEPALIVE_FRAME) >= 2)
            assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_failed_keepalive_write_closes_session(self, registry: SessionRegistry):
        transport = SessionTransport("/messages/", registry, keepalive_interval=0.05)
        conn = FakeConnection(fail_on=KEEPALIVE_FRAME)

        async with transport.connect_sse(sse_scope(spec_version="2.4"), conn.receive, conn.send) as (
            read,
            _,
        ):
            await wait_until(lambda: conn.frames)
            session_id = conn.session_id

            with anyio.fail_after(2), pytest.raises(anyio.EndOfStream):
                await read.receive()

        assert len(registry) == 0
        assert await post(transport, f"session_id={session_id}") == 404

    def test_rejects_non_positive_keepalive(self, registry: SessionRegistry):
        with pytest.raises(ValueError):
            SessionTransport("/messages/", registry, keepalive_interval=0)


class TestPostMessage:
    @pytest.mark.asyncio
    async def test_missing_session_id(self, transport: SessionTransport):
        assert await post(transport, "") == 400
        assert await post(transport, "session_id=") == 400

    @pytest.mark.asyncio
    async def test_unknown_or_malformed_session_id(self, transport: SessionTransport):
        assert await post(transport, f"session_id={uuid4().hex}") == 404
        assert await post(transport, "session_id=not-a-uuid") == 404

    @pytest.mark.asyncio
    async def test_invalid_body(self, transport: SessionTransport):
        conn = FakeConnection()

        async with transport.connect_sse(sse_scope(), conn.receive, conn.send) as (read, _):
            await wait_until(lambda: conn.frames)

            statuses: list[int] = []
            async with anyio.create_task_group() as tg:
                tg.start_soon(
                    post_into, statuses, transport, f"session_id={conn.session_id}", b"{not json"
                )
                with anyio.fail_after(2):
                    received = await read.receive()

        assert statuses == [400]
        assert isinstance(received, ValidationError)


class TestOrdering:
    @pytest.mark.asyncio
    async def test_next_request_waits_for_reply(self, transport: SessionTransport):
        conn = FakeConnection()

        async with transport.connect_sse(sse_scope(), conn.receive, conn.send) as (read, write):
            await wait_until(lambda: conn.frames)
            query = f"session_id={conn.session_id}"

            statuses: list[int] = []
            async with anyio.create_task_group() as tg:
                tg.start_soon(post_into, statuses, transport, query, request(1))
                with anyio.fail_after(2):
                    first = await read.receive()
                tg.start_soon(post_into, statuses, transport, query, request(2))
                await anyio.sleep(0.1)

                with pytest.raises(anyio.WouldBlock):
                    read.receive_nowait()
                assert statuses == []

                with anyio.fail_after(2):
                    await write.send(reply(1))
                    second = await read.receive()
                    await write.send(reply(2))

            await wait_until(lambda: len(conn.frames) >= 3)

        assert first.message.root.id == 1
        assert second.message.root.id == 2
        assert statuses == [202, 202]
        assert b'"id":1' in conn.frames[1]
        assert b'"id":2' in conn.frames[2]

    @pytest.mark.asyncio
    async def test_client_replies_are_not_queued(self, transport: SessionTransport):
        conn = FakeConnection()
        client_reply = b'{"jsonrpc":"2.0","id":"server-1","result":{}}'

        async with transport.connect_sse(sse_scope(), conn.receive, conn.send) as (read, write):
            await wait_until(lambda: conn.frames)
            query = f"session_id={conn.session_id}"

            statuses: list[int] = []
            async with anyio.create_task_group() as tg:
                tg.start_soon(post_into, statuses, transport, query, request(1))
                with anyio.fail_after(2):
                    await read.receive()
                tg.start_soon(post_into, statuses, transport, query, client_reply)
                with anyio.fail_after(2):
                    received = await read.receive()
                await wait_until(lambda: statuses == [202])
                await write.send(reply(1))

        assert received.message.root.id == "server-1"
        assert statuses == [202, 202]

    @pytest.mark.asyncio
    async def test_close_releases_waiting_request(
        self, transport: SessionTransport, registry: SessionRegistry
    ):
        conn = FakeConnection()

        async with transport.connect_sse(sse_scope(), conn.receive, conn.send) as (read, _):
            await wait_until(lambda: conn.frames)

            statuses: list[int] = []
            async with anyio.create_task_group() as tg:
                tg.start_soon(
                    post_into, statuses, transport, f"session_id={conn.session_id}", request(1)
                )
                with anyio.fail_after(2):
                    await read.receive()
                conn.disconnect()
                await wait_until(lambda: statuses == [202])

            assert len(registry) == 0
