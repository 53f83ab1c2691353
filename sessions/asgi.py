"""ASGI glue between FastAPI routes and the session transports.

Transports write their own responses (streams, SSE, JSON), so a route hands
them the raw scope/receive/send through TransportResponse.
"""

from typing import Awaitable, Callable

from starlette.responses import Response
from starlette.types import Message, Receive, Scope, Send

ASGIHandler = Callable[[Scope, Receive, Send], Awaitable[None]]


class TransportResponse(Response):
    """A Response that lets a transport handler answer the request itself."""

    def __init__(self, handler: ASGIHandler):
        super().__init__()
        self.handler = handler

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.handler(scope, receive, send)


def replay_body(body: bytes, receive: Receive) -> Receive:
    """Return a receive callable that yields an already-read body once.

    The route reads the body to inspect it; the transport reads it again.
    Later calls fall through to the real receive (disconnect detection).
    """
    replayed = False

    async def wrapped_receive() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return wrapped_receive
