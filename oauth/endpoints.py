"""OAuth 2.0 endpoints for the authorization proxy.

This module contains all OAuth-related endpoints:
- Discovery metadata (/.well-known/*)
- Client registration (/register), proxied upstream
- Authorization (/authorize), redirected upstream
- Token endpoint (/token), upstream code exchange + opaque token
- Revocation (/revoke), only when an upstream revocation URL is configured
"""

import hmac
import logging
import time
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Form, Request
from fastapi.responses import JSONResponse, RedirectResponse
from mcp.shared.auth import OAuthClientInformationFull
from pydantic import AnyUrl, ValidationError

from errors import ProxyError
from oauth.models import AuthorizationRequest
from oauth.provider import OAuthProxyProvider

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def oauth_error(error: str, description: str, status_code: int = 400, headers: dict = None) -> JSONResponse:
    return JSONResponse(
        {"error": error, "error_description": description},
        status_code=status_code,
        headers=headers,
    )


def proxy_error_response(exc: ProxyError) -> JSONResponse:
    return JSONResponse(exc.to_oauth_error(), status_code=exc.status_code, headers=NO_STORE_HEADERS)


def redirect_with_error(redirect_uri: str, error: str, description: str, state: str = None) -> RedirectResponse:
    params = {"error": error, "error_description": description}
    if state:
        params["state"] = state
    separator = "&" if "?" in redirect_uri else "?"
    return RedirectResponse(url=f"{redirect_uri}{separator}{urlencode(params)}", status_code=302)


def resolve_redirect_uri(client: OAuthClientInformationFull, redirect_uri: str) -> Optional[str]:
    """Pick the redirect URI for an authorization request, or None if it is not allowed.

    Registered URIs are stored normalized (http://host becomes http://host/),
    so the requested URI is parsed before comparing. The caller's own string
    is what goes upstream.
    """
    registered = client.redirect_uris or []
    if redirect_uri:
        try:
            requested = AnyUrl(redirect_uri)
        except ValidationError:
            return None
        return redirect_uri if requested in registered else None
    if len(registered) == 1:
        return str(registered[0])
    return None


def client_secret_matches(client: OAuthClientInformationFull, client_secret: Optional[str]) -> bool:
    """Constant-time secret check; an expired secret never matches."""
    if not client.client_secret:
        return True
    if not client_secret:
        return False
    if client.client_secret_expires_at and client.client_secret_expires_at < int(time.time()):
        logger.info(f"[TOKEN] Client secret expired for client: {client.client_id}")
        return False
    return hmac.compare_digest(client.client_secret.encode(), client_secret.encode())


def create_oauth_router(provider: OAuthProxyProvider, config) -> APIRouter:
    """Build the OAuth router bound to a provider and the service config."""
    router = APIRouter(tags=["oauth"])
    base_url = config.base_url
    issuer_url = config.issuer_url or base_url
    scopes_supported = config.default_scopes

    async def authenticate_client(client_id: str, client_secret: str):
        """Return the registered client, or an error response."""
        if not client_id:
            return None, oauth_error("invalid_client", "client_id is required", 401)
        try:
            client = await provider.get_client(client_id)
        except ProxyError as e:
            return None, proxy_error_response(e)
        if client is None:
            logger.info(f"[TOKEN] Unknown client: {client_id}")
            return None, oauth_error("invalid_client", "Invalid client_id", 401)
        if not client_secret_matches(client, client_secret):
            logger.info(f"[TOKEN] Client secret mismatch for client: {client_id}")
            return None, oauth_error("invalid_client", "Invalid client_secret", 401)
        return client, None

    # ============== Discovery ==============

    @router.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server():
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
        metadata = {
            "issuer": issuer_url,
            "authorization_endpoint": f"{base_url}/authorize",
            "token_endpoint": f"{base_url}/token",
            "registration_endpoint": f"{base_url}/register",
            "scopes_supported": scopes_supported,
            "response_types_supported": ["code"],
            "response_modes_supported": ["query"],
            "grant_types_supported": ["authorization_code"],
            "token_endpoint_auth_methods_supported": ["client_secret_post", "none"],
            "code_challenge_methods_supported": ["S256"],
        }
        if provider.revocation_enabled:
            metadata["revocation_endpoint"] = f"{base_url}/revoke"
            metadata["revocation_endpoint_auth_methods_supported"] = ["client_secret_post", "none"]
        return metadata

    @router.get("/.well-known/oauth-protected-resource")
    async def oauth_protected_resource():
        """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
        return {
            "resource": base_url,
            "authorization_servers": [base_url],
            "scopes_supported": scopes_supported,
            "bearer_methods_supported": ["header"],
        }

    # ============== Client Registration ==============

    @router.post("/register")
    async def register_client(request: Request):
        """OAuth 2.0 Dynamic Client Registration (RFC 7591), forwarded upstream."""
        try:
            payload = await request.json()
        except ValueError:
            return oauth_error("invalid_client_metadata", "Request body must be JSON")
        if not isinstance(payload, dict):
            return oauth_error("invalid_client_metadata", "Request body must be a JSON object")

        try:
            client = await provider.register_client(payload)
        except ProxyError as e:
            return proxy_error_response(e)

        return JSONResponse(
            client.model_dump(mode="json", exclude_none=True),
            status_code=201,
            headers=NO_STORE_HEADERS,
        )

    # ============== Authorization ==============

    @router.get("/authorize")
    async def authorize(
        client_id: str = "",
        redirect_uri: str = "",
        response_type: str = "",
        scope: str = "",
        state: str = "",
        code_challenge: str = "",
        code_challenge_method: str = "",
    ):
        """OAuth 2.0 Authorization Endpoint - redirects to the upstream IDP."""
        if not client_id:
            return oauth_error("invalid_request", "client_id is required")

        try:
            client = await provider.get_client(client_id)
        except ProxyError as e:
            return proxy_error_response(e)
        if client is None:
            logger.info(f"[AUTHORIZE] Unknown client: {client_id}")
            return oauth_error("invalid_client", "Client not found")

        # Errors before the redirect URI is known cannot be sent back to the client
        resolved_redirect_uri = resolve_redirect_uri(client, redirect_uri)
        if resolved_redirect_uri is None:
            logger.info(f"[AUTHORIZE] Unregistered redirect_uri for client {client_id}: {redirect_uri}")
            return oauth_error("invalid_request", "Unregistered redirect_uri")

        if response_type != "code":
            return redirect_with_error(
                resolved_redirect_uri, "unsupported_response_type", "response_type must be code", state
            )
        if not code_challenge:
            return redirect_with_error(
                resolved_redirect_uri, "invalid_request", "code_challenge is required", state
            )
        if code_challenge_method and code_challenge_method != "S256":
            return redirect_with_error(
                resolved_redirect_uri, "invalid_request", "code_challenge_method must be S256", state
            )

        params = AuthorizationRequest(
            redirect_uri=resolved_redirect_uri,
            code_challenge=code_challenge,
            state=state or None,
            scopes=scope.split(),
        )
        try:
            target_url = provider.authorize(client, params)
        except ProxyError as e:
            return proxy_error_response(e)
        return RedirectResponse(url=target_url, status_code=302)

    # ============== Token Endpoint ==============

    @router.post("/token")
    async def token(
        grant_type: str = Form(None),
        code: str = Form(None),
        redirect_uri: str = Form(None),
        client_id: str = Form(None),
        client_secret: str = Form(None),
        code_verifier: str = Form(None),
    ):
        """OAuth 2.0 Token Endpoint."""
        logger.debug(f"[TOKEN] grant_type: {grant_type}, client_id: {client_id}")

        client, error_response = await authenticate_client(client_id, client_secret)
        if error_response is not None:
            return error_response

        if grant_type != "authorization_code":
            return oauth_error("unsupported_grant_type", "Only authorization_code is supported")
        if not code:
            return oauth_error("invalid_request", "code is required")

        try:
            tokens = await provider.exchange_authorization_code(
                client, code, code_verifier=code_verifier, redirect_uri=redirect_uri
            )
        except ProxyError as e:
            return proxy_error_response(e)

        return JSONResponse(tokens.model_dump(mode="json", exclude_none=True), headers=NO_STORE_HEADERS)

    # ============== Revocation ==============

    if provider.revocation_enabled:

        @router.post("/revoke")
        async def revoke(
            token: str = Form(None),
            token_type_hint: str = Form(None),
            client_id: str = Form(None),
            client_secret: str = Form(None),
        ):
            """OAuth 2.0 Token Revocation (RFC 7009)."""
            client, error_response = await authenticate_client(client_id, client_secret)
            if error_response is not None:
                return error_response
            if not token:
                return oauth_error("invalid_request", "token is required")

            try:
                await provider.revoke_token(token, client)
            except ProxyError as e:
                return proxy_error_response(e)
            return JSONResponse({})

    return router
