"""Event-stream (legacy SSE) sessions.

A client opens GET /sse and keeps the stream for the whole conversation;
messages go the other way through POST /messages?sessionId=<id>. Session
identifiers are always allocated by the server.

The connection wires three memory streams:
- read stream: POSTed client messages -> protocol server
- write stream: protocol server -> SSE events
- sse stream: formatted events -> EventSourceResponse
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

import anyio
from anyio.streams.memory import MemoryObjectSendStream
from mcp import types
from mcp.shared.message import SessionMessage
from sse_starlette import EventSourceResponse

from config import SSE_IDLE_TIMEOUT
from errors import NoSessionError
from sessions.registry import SessionRegistry, TransportKind, new_session_id

logger = logging.getLogger(__name__)

PING_INTERVAL = 15


class EventStreamConnection:
    """One live SSE stream bound to a protocol server session."""

    def __init__(self, session_id: str, endpoint: str, idle_timeout: float = SSE_IDLE_TIMEOUT):
        self.session_id = session_id
        self.endpoint = endpoint
        self.idle_timeout = idle_timeout
        self.closed = False
        self._read_stream_writer: MemoryObjectSendStream = None

    @property
    def message_url(self) -> str:
        return f"{self.endpoint}?sessionId={self.session_id}"

    @asynccontextmanager
    async def connect(self, scope, receive, send):
        """Start the SSE response and yield (read_stream, write_stream) for the server."""
        read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)
        sse_stream_writer, sse_stream_reader = anyio.create_memory_object_stream[dict[str, Any]](0)
        self._read_stream_writer = read_stream_writer

        async def sse_writer():
            async with sse_stream_writer, write_stream_reader:
                await sse_stream_writer.send({"event": "endpoint", "data": self.message_url})
                logger.debug(f"[SSE] Sent endpoint event for session {self.session_id}")
                while True:
                    with anyio.move_on_after(self.idle_timeout):
                        try:
                            session_message = await write_stream_reader.receive()
                        except anyio.EndOfStream:
                            return
                        await sse_stream_writer.send({
                            "event": "message",
                            "data": session_message.message.model_dump_json(by_alias=True, exclude_none=True),
                        })
                        continue
                    logger.info(f"[SSE] Session {self.session_id} idle for {self.idle_timeout}s, closing stream")
                    return

        async def response_wrapper(scope, receive, send):
            try:
                await EventSourceResponse(
                    content=sse_stream_reader, data_sender_callable=sse_writer, ping=PING_INTERVAL
                )(scope, receive, send)
            finally:
                self.closed = True
                await read_stream_writer.aclose()
                await write_stream_reader.aclose()

        async with anyio.create_task_group() as tg:
            tg.start_soon(response_wrapper, scope, receive, send)
            try:
                yield read_stream, write_stream
            finally:
                self.closed = True
                await read_stream_writer.aclose()
                await write_stream.aclose()
                tg.cancel_scope.cancel()

    async def deliver(self, message: types.JSONRPCMessage) -> None:
        """Hand a client message to the protocol server."""
        if self.closed or self._read_stream_writer is None:
            raise NoSessionError(f"Event stream {self.session_id} is closed")
        try:
            await self._read_stream_writer.send(SessionMessage(message))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            self.closed = True
            raise NoSessionError(f"Event stream {self.session_id} is closed") from e


class EventStreamSessions:
    """Registry and lifecycle for event-stream sessions."""

    def __init__(self, server, endpoint: str = "/messages", idle_timeout: float = SSE_IDLE_TIMEOUT):
        """
        Args:
            server: Low-level MCP server (run / create_initialization_options).
            endpoint: Path clients POST messages to.
            idle_timeout: Seconds without outbound traffic before the stream closes.
        """
        self.server = server
        self.endpoint = endpoint
        self.idle_timeout = idle_timeout
        self.registry = SessionRegistry(TransportKind.EVENT_STREAM)

    async def connect(self, scope, receive, send) -> None:
        """Open a new event-stream session and serve it until the stream closes."""
        connection = EventStreamConnection(new_session_id(), self.endpoint, self.idle_timeout)
        await self.registry.insert(connection.session_id, connection)
        try:
            async with connection.connect(scope, receive, send) as (read_stream, write_stream):
                await self.server.run(read_stream, write_stream, self.server.create_initialization_options())
        finally:
            event = await self.registry.remove(connection.session_id)
            if event is not None:
                logger.info(f"[SSE] Connection closed for session {connection.session_id}")

    async def deliver(self, session_id: str, message: types.JSONRPCMessage) -> None:
        record = await self.registry.require(session_id)
        try:
            await record.connection.deliver(message)
        except NoSessionError:
            await self.registry.remove(session_id)
            raise

    async def close(self, session_id: str) -> None:
        await self.registry.remove(session_id)
