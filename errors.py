"""Error taxonomy for the OAuth proxy and the JSON-RPC error envelope.

Every error the proxy raises on purpose derives from ProxyError. The HTTP
layer turns them into responses:
- MCP endpoints get a JSON-RPC envelope (see ErrorEnvelopeMiddleware)
- OAuth endpoints get an RFC 6749 error body (see ProxyError.to_oauth_error)

Upstream and storage details are logged, never returned to the client.
"""

import json
import logging

logger = logging.getLogger(__name__)

JSONRPC_SERVER_ERROR = -32000


def jsonrpc_error(message: str, code: int = JSONRPC_SERVER_ERROR, request_id=None) -> dict:
    """Build a JSON-RPC 2.0 error envelope."""
    return {
        "jsonrpc": "2.0",
        "error": {"code": code, "message": message},
        "id": request_id,
    }


class ProxyError(Exception):
    """Base exception for all OAuth proxy errors."""

    status_code = 500
    public_message = "Internal server error"
    oauth_error = "server_error"

    def __init__(self, message: str = None):
        self.message = message or self.public_message
        super().__init__(self.message)

    def to_envelope(self) -> dict:
        return jsonrpc_error(self.public_message)

    def to_oauth_error(self) -> dict:
        return {"error": self.oauth_error, "error_description": self.public_message}


class ConfigurationError(ProxyError):
    """Required settings are missing or a record cannot be used as configured."""


class InvalidTokenError(ProxyError):
    """Missing, unknown or expired opaque access token."""

    status_code = 401
    public_message = "Invalid access token"
    oauth_error = "invalid_token"

    def __init__(self, message: str = None, www_authenticate: str = None):
        super().__init__(message)
        self.www_authenticate = www_authenticate


class InsufficientScopeError(ProxyError):
    status_code = 403
    public_message = "Insufficient scope"
    oauth_error = "insufficient_scope"


class UpstreamError(ProxyError):
    """The upstream identity provider answered with a failure."""


class TokenExchangeError(UpstreamError):
    pass


class ClientRegistrationError(UpstreamError):
    pass


class TokenRevocationError(UpstreamError):
    pass


class NoSessionError(ProxyError):
    """Unknown or missing session identifier. Never creates state."""

    status_code = 400
    public_message = "No transport found for sessionId"
    oauth_error = "invalid_request"


class SessionConflictError(ProxyError):
    """A live session already uses the identifier."""


class StorageUnavailableError(ProxyError):
    """The token vault backend could not be reached."""


class ErrorEnvelopeMiddleware:
    """Pure ASGI middleware converting errors into JSON-RPC envelopes.

    Tracks whether the response has started so that an error raised
    mid-stream never produces a second response.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def tracking_send(message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, tracking_send)
        except ProxyError as exc:
            if isinstance(exc, UpstreamError) or exc.status_code >= 500:
                logger.error(f"[ERROR] {type(exc).__name__}: {exc.message}")
            else:
                logger.info(f"[ERROR] {type(exc).__name__}: {exc.message}")
            await self._respond(response_started, send, exc.status_code, exc.to_envelope(), exc)
        except Exception as exc:
            logger.exception("[ERROR] Unhandled error while serving request")
            await self._respond(
                response_started, send, 500, jsonrpc_error("Internal server error"), exc
            )

    async def _respond(self, response_started: bool, send, status_code: int, body: dict, exc):
        if response_started:
            logger.warning("[ERROR] headers already sent so no response sent")
            return

        headers = [(b"content-type", b"application/json")]
        www_authenticate = getattr(exc, "www_authenticate", None)
        if www_authenticate:
            headers.append((b"www-authenticate", www_authenticate.encode()))

        payload = json.dumps(body).encode()
        headers.append((b"content-length", str(len(payload)).encode()))
        await send({"type": "http.response.start", "status": status_code, "headers": headers})
        await send({"type": "http.response.body", "body": payload})
