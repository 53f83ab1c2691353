"""Streamable HTTP (bidirectional) sessions.

Each session owns a StreamableHTTPServerTransport from the MCP SDK and a
server task running the protocol server on it. Rules:
- no session id + initialize payload: create a session
- known session id: route to its transport
- anything else: NoSessionError, nothing is created

StatelessStreamableHTTP is the sessionless variant: every POST gets a fresh
transport and server that live only as long as that one response.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import anyio
from anyio.abc import TaskGroup
from mcp.server.streamable_http import StreamableHTTPServerTransport

from errors import NoSessionError
from sessions.registry import SessionRegistry, TransportKind, new_session_id

logger = logging.getLogger(__name__)

MCP_SESSION_ID_HEADER = "mcp-session-id"


def is_initialize_request(payload: Any) -> bool:
    """True for an initialize JSON-RPC request (or a batch containing one)."""
    if isinstance(payload, list):
        return any(is_initialize_request(item) for item in payload)
    return isinstance(payload, dict) and payload.get("method") == "initialize"


class _ServerTaskOwner:
    """Owns the task group the protocol server tasks run in."""

    def __init__(self, server, json_response: bool = False):
        """
        Args:
            server: Low-level MCP server (run / create_initialization_options).
            json_response: Answer POSTs with JSON instead of an SSE stream.
        """
        self.server = server
        self.json_response = json_response
        self._task_group: Optional[TaskGroup] = None

    @asynccontextmanager
    async def run(self):
        """Own the task group for server tasks. Enter once per app lifespan."""
        if self._task_group is not None:
            raise RuntimeError(f"{type(self).__name__}.run() is already active")
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info(f"[STREAMABLE] {type(self).__name__} started")
            try:
                yield self
            finally:
                tg.cancel_scope.cancel()
                self._task_group = None
                logger.info(f"[STREAMABLE] {type(self).__name__} stopped")

    def _require_task_group(self) -> TaskGroup:
        if self._task_group is None:
            raise RuntimeError(f"{type(self).__name__} is not running; enter run() first")
        return self._task_group


class StreamableHTTPSessions(_ServerTaskOwner):
    """Registry and lifecycle for streamable HTTP sessions."""

    def __init__(self, server, json_response: bool = False):
        super().__init__(server, json_response=json_response)
        self.registry = SessionRegistry(TransportKind.STREAMABLE_HTTP)

    async def handle_post(self, scope, receive, send, session_id: Optional[str], payload: Any) -> None:
        if session_id:
            record = await self.registry.require(session_id)
            logger.info(f"[STREAMABLE] Transport found for session {session_id}")
            await record.connection.handle_request(scope, receive, send)
            return

        if not is_initialize_request(payload):
            raise NoSessionError("Bad request: no valid session ID provided")

        transport = await self._start_session()
        await transport.handle_request(scope, receive, send)
        logger.info(f"[STREAMABLE] Initialize handled for session {transport.mcp_session_id}")

    async def handle_session_request(self, scope, receive, send, session_id: Optional[str]) -> None:
        """GET (server stream) and DELETE (close) on an existing session."""
        record = await self.registry.require(session_id)
        await record.connection.handle_request(scope, receive, send)
        if scope.get("method") == "DELETE":
            await self.close(session_id)

    async def close(self, session_id: str) -> None:
        record = await self.registry.get(session_id)
        if record is not None:
            await record.connection.terminate()
        await self.registry.remove(session_id)

    async def _start_session(self) -> StreamableHTTPServerTransport:
        task_group = self._require_task_group()

        session_id = new_session_id()
        transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=self.json_response,
        )

        async def run_server(*, task_status=anyio.TASK_STATUS_IGNORED):
            try:
                async with transport.connect() as (read_stream, write_stream):
                    task_status.started()
                    await self.server.run(
                        read_stream,
                        write_stream,
                        self.server.create_initialization_options(),
                        stateless=False,
                    )
            except Exception:
                logger.exception(f"[STREAMABLE] Server task for session {session_id} crashed")
            finally:
                if await self.registry.remove(session_id) is not None:
                    logger.info(f"[STREAMABLE] Transport closed for session {session_id}")

        # Inserted before the task starts so the task's finally always finds it.
        # The id is unknown to clients until the initialize response goes out.
        await self.registry.insert(session_id, transport)
        try:
            await task_group.start(run_server)
        except BaseException:
            await self.registry.remove(session_id)
            raise
        return transport


class StatelessStreamableHTTP(_ServerTaskOwner):
    """Sessionless /mcp: one transport and one server run per POST."""

    async def handle_post(self, scope, receive, send) -> None:
        task_group = self._require_task_group()
        transport = StreamableHTTPServerTransport(
            mcp_session_id=None,
            is_json_response_enabled=self.json_response,
        )

        async def run_server(*, task_status=anyio.TASK_STATUS_IGNORED):
            async with transport.connect() as (read_stream, write_stream):
                task_status.started()
                try:
                    await self.server.run(
                        read_stream,
                        write_stream,
                        self.server.create_initialization_options(),
                        stateless=True,
                    )
                except Exception:
                    logger.exception("[STREAMABLE] Stateless server task crashed")

        await task_group.start(run_server)
        try:
            await transport.handle_request(scope, receive, send)
        finally:
            logger.debug("[STREAMABLE] Closing stateless transport")
            await transport.terminate()
