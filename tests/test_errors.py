"""
Error taxonomy and ErrorEnvelopeMiddleware tests.
"""

import logging

import anyio
import pytest
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.routing import Route
from starlette.testclient import TestClient

from errors import (
    ConfigurationError,
    ErrorEnvelopeMiddleware,
    InvalidTokenError,
    NoSessionError,
    StorageUnavailableError,
    TokenExchangeError,
    jsonrpc_error,
)


def _app(endpoint):
    return Starlette(
        routes=[Route("/boom", endpoint, methods=["GET", "POST"])],
        middleware=[Middleware(ErrorEnvelopeMiddleware)],
    )


class TestTaxonomy:
    def test_jsonrpc_error_envelope(self):
        assert jsonrpc_error("nope") == {
            "jsonrpc": "2.0",
            "error": {"code": -32000, "message": "nope"},
            "id": None,
        }

    @pytest.mark.parametrize(
        "error_cls, status, message",
        [
            (InvalidTokenError, 401, "Invalid access token"),
            (NoSessionError, 400, "No transport found for sessionId"),
            (TokenExchangeError, 500, "Internal server error"),
            (StorageUnavailableError, 500, "Internal server error"),
            (ConfigurationError, 500, "Internal server error"),
        ],
    )
    def test_status_and_public_message(self, error_cls, status, message):
        exc = error_cls("internal detail")
        assert exc.status_code == status
        assert exc.to_envelope()["error"]["message"] == message
        # The detail stays on the exception for logging only
        assert exc.message == "internal detail"

    def test_oauth_error_body(self):
        assert InvalidTokenError().to_oauth_error() == {
            "error": "invalid_token",
            "error_description": "Invalid access token",
        }


class TestErrorEnvelopeMiddleware:
    def test_no_session_error_becomes_400_envelope(self):
        async def endpoint(request):
            raise NoSessionError("unknown id")

        response = TestClient(_app(endpoint)).post("/boom")

        assert response.status_code == 400
        assert response.json() == {
            "jsonrpc": "2.0",
            "error": {"code": -32000, "message": "No transport found for sessionId"},
            "id": None,
        }

    def test_invalid_token_carries_www_authenticate(self):
        async def endpoint(request):
            raise InvalidTokenError(www_authenticate='Bearer error="invalid_token"')

        response = TestClient(_app(endpoint)).get("/boom")

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == 'Bearer error="invalid_token"'
        assert response.json()["error"]["message"] == "Invalid access token"

    def test_upstream_details_are_not_leaked(self, caplog):
        async def endpoint(request):
            raise TokenExchangeError("upstream said: client secret is hunter2")

        with caplog.at_level(logging.ERROR):
            response = TestClient(_app(endpoint)).get("/boom")

        assert response.status_code == 500
        assert "hunter2" not in response.text
        assert "hunter2" in caplog.text

    def test_unexpected_exception_becomes_500_envelope(self):
        async def endpoint(request):
            raise RuntimeError("kaboom")

        response = TestClient(_app(endpoint)).get("/boom")

        assert response.status_code == 500
        assert response.json()["error"] == {"code": -32000, "message": "Internal server error"}

    def test_error_after_headers_sent_writes_nothing(self, caplog):
        async def app(scope, receive, send):
            await send({"type": "http.response.start", "status": 200, "headers": []})
            await send({"type": "http.response.body", "body": b"partial", "more_body": True})
            raise NoSessionError("too late")

        sent = []

        async def receive():
            return {"type": "http.request", "body": b"", "more_body": False}

        async def send(message):
            sent.append(message)

        middleware = ErrorEnvelopeMiddleware(app)
        with caplog.at_level(logging.WARNING):
            anyio.run(middleware, {"type": "http", "method": "GET", "path": "/"}, receive, send)

        assert [message["type"] for message in sent] == ["http.response.start", "http.response.body"]
        assert "headers already sent so no response sent" in caplog.text
