"""
SSE session multiplexer.

Every ``GET /sse`` connection gets its own ``Session`` with a fresh uuid4
identifier, registered in a ``SessionRegistry``. Clients deliver JSON-RPC
messages over the stateless ``POST <endpoint>?session_id=<hex>``
side-channel; the registry lookup routes each message to exactly one
session. Within a session, requests are processed one at a time and their
replies are written in arrival order.

A session has two states, open and closed. It closes when the response
ends (client disconnect or write failure), when a keep-alive or message
write fails, or when the MCP server loop bound to it exits. Closing removes
the registry entry, cancels the keep-alive timer and message forwarder, and
ends the inbound stream. Closing is idempotent and ids are never reused.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import logging
from threading import Lock
from urllib.parse import quote
from uuid import UUID, uuid4

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp import types
from mcp.shared.message import SessionMessage
from pydantic import ValidationError
from sse_starlette.sse import ServerSentEvent
from starlette.requests import ClientDisconnect, Request
from starlette.responses import Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from codesearch_mcp.errors import SessionNotFound

logger = logging.getLogger("codesearch-mcp.sessions")

KEEPALIVE_FRAME = ServerSentEvent(comment="keep-alive").encode()

SSE_HEADERS = {
    "Cache-Control": "no-store",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass(eq=False)
class Session:
    """Server-side state bound to one SSE connection."""

    session_id: UUID
    inbound: MemoryObjectSendStream[SessionMessage | Exception]
    outbound: MemoryObjectSendStream[bytes]
    # Owns the keep-alive timer and the message forwarder
    cancel_scope: anyio.CancelScope = field(default_factory=anyio.CancelScope)
    # Held while one client request is in flight
    turn: anyio.Lock = field(default_factory=anyio.Lock)
    awaiting: dict[types.RequestId, anyio.Event] = field(default_factory=dict)
    closed: bool = False

    @property
    def key(self) -> str:
        return self.session_id.hex

    async def deliver(self, message: SessionMessage | Exception) -> None:
        """Hand an inbound message to the MCP server loop."""
        await self.inbound.send(message)

    async def write(self, frame: bytes) -> None:
        """Queue an encoded SSE frame on the response stream."""
        await self.outbound.send(frame)

    def expect_reply(self, request_id: types.RequestId) -> anyio.Event:
        """Event set once the reply to ``request_id`` is on the stream (or the session closes)."""
        event = anyio.Event()
        if self.closed:
            event.set()
        else:
            self.awaiting[request_id] = event
        return event

    def replied(self, request_id: types.RequestId) -> None:
        event = self.awaiting.pop(request_id, None)
        if event is not None:
            event.set()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.cancel_scope.cancel()
        self.inbound.close()
        self.outbound.close()
        for event in self.awaiting.values():
            event.set()
        self.awaiting.clear()


class SessionRegistry:
    """Thread-safe mapping of session id to open session."""

    def __init__(self):
        self._lock = Lock()
        self._sessions: dict[UUID, Session] = {}

    def register(self, session: Session) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session {session.key} is already registered")
            self._sessions[session.session_id] = session

    def get(self, session_id: UUID) -> Session:
        """
        Look up an open session.

        Raises:
            SessionNotFound: No open session has this id
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def remove(self, session_id: UUID) -> Session | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class SessionTransport:
    """
    Multiplexes MCP sessions over SSE streams and a POST side-channel.

    Example:
        registry = SessionRegistry()
        transport = SessionTransport("/messages/", registry)

        async with transport.connect_sse(scope, receive, send) as (read, write):
            await server.run(read, write, server.create_initialization_options())
    """

    def __init__(
        self,
        endpoint: str,
        registry: SessionRegistry,
        keepalive_interval: float = 15.0,
    ):
        """
        Args:
            endpoint: Path of the side-channel, advertised to clients
            registry: Routing table shared with the side-channel handler
            keepalive_interval: Seconds between keep-alive comment frames
        """
        if keepalive_interval <= 0:
            raise ValueError("keepalive_interval must be positive")
        self.endpoint = endpoint
        self.registry = registry
        self.keepalive_interval = keepalive_interval

    def _endpoint_uri(self, scope: Scope, session_id: UUID) -> str:
        root_path = scope.get("root_path", "")
        full_path = root_path.rstrip("/") + self.endpoint
        return f"{quote(full_path)}?session_id={session_id.hex}"

    @asynccontextmanager
    async def connect_sse(
        self, scope: Scope, receive: Receive, send: Send
    ) -> AsyncIterator[
        tuple[
            MemoryObjectReceiveStream[SessionMessage | Exception],
            MemoryObjectSendStream[SessionMessage],
        ]
    ]:
        """
        Open a session for one SSE connection.

        Yields the (read, write) stream pair the MCP server loop runs on.
        The session closes when the response ends or the caller's block
        exits, whichever comes first.
        """
        if scope["type"] != "http":
            raise ValueError("connect_sse can only handle HTTP requests")

        read_stream_writer, read_stream = anyio.create_memory_object_stream[
            SessionMessage | Exception
        ](0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)
        frame_writer, frame_reader = anyio.create_memory_object_stream[bytes](0)

        session = Session(session_id=uuid4(), inbound=read_stream_writer, outbound=frame_writer)
        self.registry.register(session)
        endpoint_uri = self._endpoint_uri(scope, session.session_id)
        logger.info(
            f"Session {session.key} opened ({len(self.registry)} open)",
            extra={"session": session.key},
        )

        async with anyio.create_task_group() as tg:
            tg.start_soon(self._serve_response, session, frame_reader, scope, receive, send)
            tg.start_soon(self._pump, session, write_stream_reader, endpoint_uri)
            try:
                yield read_stream, write_stream
            finally:
                self.close(session)

    async def _serve_response(
        self,
        session: Session,
        frame_reader: MemoryObjectReceiveStream[bytes],
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        async def frames() -> AsyncIterator[bytes]:
            async with frame_reader:
                async for frame in frame_reader:
                    yield frame

        response = StreamingResponse(frames(), media_type="text/event-stream", headers=SSE_HEADERS)
        try:
            await response(scope, receive, send)
        except (OSError, ClientDisconnect) as e:
            logger.info(f"Session {session.key} write failed: {e!r}", extra={"session": session.key})
        finally:
            frame_reader.close()
            self.close(session)

    async def _pump(
        self,
        session: Session,
        write_stream_reader: MemoryObjectReceiveStream[SessionMessage],
        endpoint_uri: str,
    ) -> None:
        with session.cancel_scope:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._keepalive, session)
                await self._forward(session, write_stream_reader, endpoint_uri)

    async def _forward(
        self,
        session: Session,
        write_stream_reader: MemoryObjectReceiveStream[SessionMessage],
        endpoint_uri: str,
    ) -> None:
        async with write_stream_reader:
            endpoint_frame = ServerSentEvent(data=endpoint_uri, event="endpoint").encode()
            if not await self._write(session, endpoint_frame):
                return
            async for session_message in write_stream_reader:
                root = session_message.message.root
                data = session_message.message.model_dump_json(by_alias=True, exclude_none=True)
                if not await self._write(session, ServerSentEvent(data=data, event="message").encode()):
                    return
                if isinstance(root, (types.JSONRPCResponse, types.JSONRPCError)):
                    session.replied(root.id)

    async def _keepalive(self, session: Session) -> None:
        while True:
            await anyio.sleep(self.keepalive_interval)
            if not await self._write(session, KEEPALIVE_FRAME):
                return

    async def _write(self, session: Session, frame: bytes) -> bool:
        """Write a frame; a failed write closes the session."""
        try:
            await session.write(frame)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.info(
                f"Session {session.key} stream is gone, closing", extra={"session": session.key}
            )
            self.close(session)
            return False
        return True

    def close(self, session: Session) -> None:
        """Transition a session to closed. Safe to call more than once."""
        if self.registry.remove(session.session_id) is not None:
            logger.info(
                f"Session {session.key} closed ({len(self.registry)} open)",
                extra={"session": session.key},
            )
        session.close()

    async def handle_post_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI app for the side-channel.

        400 when ``session_id`` is missing or the body is not JSON-RPC,
        404 when no open session matches, otherwise 202 and the message is
        delivered to that session only.
        """
        request = Request(scope, receive)
        session_id_param = request.query_params.get("session_id")
        if not session_id_param:
            response = Response("session_id is required", status_code=400)
            return await response(scope, receive, send)

        try:
            session = self.registry.get(UUID(hex=session_id_param))
        except (ValueError, SessionNotFound):
            logger.debug(f"No open session for {session_id_param!r}")
            response = Response("Could not find session", status_code=404)
            return await response(scope, receive, send)

        body = await request.body()
        try:
            message = types.JSONRPCMessage.model_validate_json(body)
        except ValidationError as err:
            logger.warning(f"Session {session.key}: could not parse message")
            response = Response("Could not parse message", status_code=400)
            await response(scope, receive, send)
            async with session.turn:
                await self._deliver(session, err)
            return

        response = Response("Accepted", status_code=202)
        await response(scope, receive, send)
        await self._deliver_in_order(session, SessionMessage(message))

    async def _deliver_in_order(self, session: Session, message: SessionMessage) -> None:
        """
        Deliver a client message, one request at a time.

        A request is handed to the server loop only after the reply to the
        previous request has been written, so replies leave in arrival
        order. Client replies to server-initiated requests skip the queue.
        """
        root = message.message.root
        if isinstance(root, (types.JSONRPCResponse, types.JSONRPCError)):
            await self._deliver(session, message)
            return

        async with session.turn:
            if isinstance(root, types.JSONRPCRequest):
                replied = session.expect_reply(root.id)
                if await self._deliver(session, message):
                    await replied.wait()
            else:
                await self._deliver(session, message)

    async def _deliver(self, session: Session, message: SessionMessage | Exception) -> bool:
        try:
            await session.deliver(message)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.info(
                f"Session {session.key} closed before delivery, message dropped",
                extra={"session": session.key},
            )
            return False
        return True
