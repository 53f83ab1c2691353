"""
Shared pytest fixtures.

The upstream IDP is an httpx.MockTransport (FakeUpstream); nothing leaves
the process. The token vault is the in-memory backend unless a test builds
its own.
"""

import httpx
import pytest
from sse_starlette.sse import AppStatus
from starlette.testclient import TestClient

from config import Config
from oauth.models import UpstreamTokenBundle
from oauth.provider import OAuthProxyProvider
from oauth.stores import InMemoryTokenVault

IDP_URL = "https://idp.example.com"
BASE_URL = "https://proxy.example.com"
CLIENT_ID = "abc123"
CLIENT_SECRET = "s3cret"
REDIRECT_URI = "https://client.example.com/callback"

MCP_HEADERS = {
    "Accept": "application/json, text/event-stream",
    "Content-Type": "application/json",
}

INITIALIZE_REQUEST = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": "2025-03-26",
        "capabilities": {},
        "clientInfo": {"name": "test-client", "version": "1.0"},
    },
}


def client_record(**overrides) -> dict:
    """A client registration as the upstream returns it."""
    record = {
        "client_id": CLIENT_ID,
        "client_secret": CLIENT_SECRET,
        "redirect_uris": [REDIRECT_URI],
        "grant_types": ["authorization_code"],
        "response_types": ["code"],
        "token_endpoint_auth_method": "client_secret_post",
        "client_name": "Test Client",
    }
    record.update(overrides)
    return record


class FakeUpstream:
    """Answers like an IDP and records every request it receives."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_status = 200
        self.token_body = {
            "access_token": "upstream-access-token",
            "token_type": "bearer",
            "expires_in": 3600,
            "scope": "openid email",
            "refresh_token": "upstream-refresh-token",
            "id_token": "upstream-id-token",
        }
        self.registration_status = 201
        self.registration_body = client_record()
        self.revocation_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/oauth2/token":
            return httpx.Response(self.token_status, json=self.token_body)
        if path == "/oauth2/register":
            return httpx.Response(self.registration_status, json=self.registration_body)
        if path == "/oauth2/revoke":
            return httpx.Response(self.revocation_status)
        return httpx.Response(404, json={"error": "not_found"})

    def last_request(self, path: str) -> httpx.Request:
        matching = [request for request in self.requests if request.url.path == path]
        assert matching, f"no upstream request to {path}"
        return matching[-1]


@pytest.fixture(autouse=True)
def reset_sse_exit_event(monkeypatch):
    """sse-starlette keeps a process-wide exit event bound to the first event loop."""
    monkeypatch.setattr(AppStatus, "should_exit_event", None, raising=False)


@pytest.fixture
def config_data():
    return {
        "OAUTH_ISSUER_URL": IDP_URL,
        "OAUTH_AUTHORIZATION_URL": f"{IDP_URL}/oauth2/authorize",
        "OAUTH_TOKEN_URL": f"{IDP_URL}/oauth2/token",
        "OAUTH_REGISTRATION_URL": f"{IDP_URL}/oauth2/register",
        "THIS_HOSTNAME": BASE_URL,
        "TOKEN_STORAGE_STRATEGY": "memory",
        "MCP_JSON_RESPONSE": "true",
    }


@pytest.fixture
def config(config_data):
    return Config(config_data)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def http_client(upstream):
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))


@pytest.fixture
def vault():
    return InMemoryTokenVault()


@pytest.fixture
def provider(config, vault, http_client):
    return OAuthProxyProvider.from_config(config, vault, http_client=http_client)


@pytest.fixture
def bundle():
    return UpstreamTokenBundle(
        access_token="upstream-access-token",
        refresh_token="upstream-refresh-token",
        client_id=CLIENT_ID,
        scope="openid email",
    )


@pytest.fixture
def app(config, vault, http_client):
    from main import create_app

    return create_app(config, vault=vault, http_client=http_client)


@pytest.fixture
def client(app):
    """TestClient with the app lifespan running."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def access_token(client, vault, bundle):
    """An opaque token issued by the app's vault (on the app's event loop)."""
    return client.portal.call(vault.save_access_token, bundle, 3600)


@pytest.fixture
def auth_headers(access_token):
    return {"Authorization": f"Bearer {access_token}"}
