"""Bearer gate for MCP endpoints.

Validates the locally issued opaque token on every protected request.
Used as a FastAPI dependency on the /sse, /messages and /mcp routes; the
verified token info ends up on request.state for downstream checks.
"""

import logging

from fastapi import Request

from errors import InsufficientScopeError, InvalidTokenError
from logging_config import redact
from oauth.models import TokenInfo
from oauth.provider import OAuthProxyProvider

logger = logging.getLogger(__name__)


def extract_bearer_token(authorization: str) -> str:
    """Return the credential of an "Authorization: Bearer <token>" header, or ""."""
    scheme, _, credential = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return credential.strip()


class BearerGate:
    """Reject requests without a valid, unexpired opaque token.

    required_scopes defaults to empty: authentication without fine-grained
    authorization.
    """

    def __init__(
        self,
        provider: OAuthProxyProvider,
        required_scopes: list[str] = None,
        resource_metadata_url: str = None,
    ):
        self.provider = provider
        self.required_scopes = list(required_scopes or [])
        self.resource_metadata_url = resource_metadata_url

    @property
    def www_authenticate(self) -> str:
        header = 'Bearer error="invalid_token"'
        if self.resource_metadata_url:
            header += f', resource_metadata="{self.resource_metadata_url}"'
        return header

    async def __call__(self, request: Request) -> TokenInfo:
        token = extract_bearer_token(request.headers.get("Authorization", ""))
        if not token:
            logger.info(f"[AUTH] Request rejected: no Bearer token ({request.method} {request.url.path})")
            raise InvalidTokenError(
                "Missing or invalid Authorization header", www_authenticate=self.www_authenticate
            )

        try:
            token_info = await self.provider.verify_access_token(token)
        except InvalidTokenError as e:
            logger.info(f"[AUTH] Request rejected: invalid or expired token {redact(token)}")
            raise InvalidTokenError(e.message, www_authenticate=self.www_authenticate) from e

        missing = [scope for scope in self.required_scopes if scope not in token_info.scopes]
        if missing:
            logger.warning(f"[AUTH] Client {token_info.client_id} lacks scopes: {', '.join(missing)}")
            raise InsufficientScopeError(f"Missing scopes: {', '.join(missing)}")

        request.state.auth = token_info
        request.state.client_id = token_info.client_id
        logger.debug(f"[AUTH] Request authorized for client {token_info.client_id}")
        return token_info
