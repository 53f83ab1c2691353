"""Legacy SSE endpoints (/sse, /messages).

Older MCP clients open GET /sse, receive an `endpoint` event naming
/messages?sessionId=<id>, and POST their JSON-RPC messages there. Both
routes sit behind the bearer gate.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from mcp import types
from pydantic import ValidationError
from starlette.responses import Response

from errors import NoSessionError
from oauth.middleware import BearerGate
from oauth.models import TokenInfo
from sessions.asgi import TransportResponse
from sessions.event_stream import EventStreamSessions

logger = logging.getLogger(__name__)


def create_sse_router(sessions: EventStreamSessions, gate: BearerGate) -> APIRouter:
    """Build the SSE router bound to an event-stream session manager."""
    router = APIRouter(tags=["sse"])

    @router.get("/sse")
    async def sse_endpoint(token_info: TokenInfo = Depends(gate)) -> Response:
        """Open an event stream for an MCP client."""
        logger.info(f"[SSE] Connection established for client: {token_info.client_id}")
        return TransportResponse(sessions.connect)

    @router.post(sessions.endpoint)
    async def message_endpoint(request: Request, token_info: TokenInfo = Depends(gate)) -> Response:
        """Deliver one client message to the session named by ?sessionId=."""
        session_id = request.query_params.get("sessionId", "")
        if await sessions.registry.get(session_id) is None:
            logger.info(f"[SSE] No transport found for session {session_id!r}")
            return PlainTextResponse("No transport found for sessionId", status_code=400)

        body = await request.body()
        try:
            message = types.JSONRPCMessage.model_validate_json(body)
        except ValidationError as e:
            logger.info(f"[SSE] Could not parse message for session {session_id}: {e}")
            return PlainTextResponse("Could not parse message", status_code=400)

        try:
            await sessions.deliver(session_id, message)
        except NoSessionError:
            logger.info(f"[SSE] No transport found for session {session_id}")
            return PlainTextResponse("No transport found for sessionId", status_code=400)

        logger.debug(f"[SSE] Message accepted for session {session_id} from client {token_info.client_id}")
        return PlainTextResponse("Accepted", status_code=202)

    return router
