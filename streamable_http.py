"""Streamable HTTP endpoint (/mcp).

POST carries client messages (and opens a session on initialize), GET opens
the server-to-client stream of a session, DELETE ends it. The session is
named by the mcp-session-id header. Unknown sessions raise NoSessionError,
which ErrorEnvelopeMiddleware turns into a 400 JSON-RPC envelope.

With MCP_STATELESS set, create_stateless_router serves /mcp instead: no
sessions, and GET or DELETE answer 405.
"""

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from errors import jsonrpc_error
from oauth.middleware import BearerGate
from sessions.asgi import TransportResponse, replay_body
from sessions.streamable import MCP_SESSION_ID_HEADER, StatelessStreamableHTTP, StreamableHTTPSessions

logger = logging.getLogger(__name__)


def create_streamable_router(sessions: StreamableHTTPSessions, gate: BearerGate) -> APIRouter:
    """Build the /mcp router bound to a streamable session manager."""
    router = APIRouter(tags=["streamable-http"], dependencies=[Depends(gate)])

    @router.post("/mcp")
    async def mcp_post(request: Request) -> Response:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        body = await request.body()
        try:
            payload = json.loads(body)
        except ValueError:
            # Without a session this is a non-initialize request; with one, the transport reports it
            payload = None

        async def handler(scope, receive, send):
            await sessions.handle_post(scope, replay_body(body, receive), send, session_id, payload)

        return TransportResponse(handler)

    @router.api_route("/mcp", methods=["GET", "DELETE"])
    async def mcp_session(request: Request) -> Response:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        logger.debug(f"[STREAMABLE] {request.method} for session {session_id}")

        async def handler(scope, receive, send):
            await sessions.handle_session_request(scope, receive, send, session_id)

        return TransportResponse(handler)

    return router


def create_stateless_router(handler: StatelessStreamableHTTP, gate: BearerGate) -> APIRouter:
    """Build the sessionless /mcp router: POST only, GET and DELETE are 405."""
    router = APIRouter(tags=["streamable-http"], dependencies=[Depends(gate)])

    @router.post("/mcp")
    async def mcp_post() -> Response:
        return TransportResponse(handler.handle_post)

    @router.api_route("/mcp", methods=["GET", "DELETE"])
    async def mcp_method_not_allowed(request: Request) -> Response:
        logger.info(f"[STREAMABLE] Unsupported {request.method} /mcp on stateless server")
        return JSONResponse(jsonrpc_error("Method not allowed."), status_code=405)

    return router
