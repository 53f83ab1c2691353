"""Pydantic models for records held by the token vault.

Client registration records reuse OAuthClientInformationFull from the MCP SDK.
"""

import time
from typing import Optional

from pydantic import BaseModel, Field


class UpstreamTokenBundle(BaseModel):
    """Tokens obtained from the upstream IDP for one client."""

    access_token: str
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    client_id: str
    scope: str = ""

    @property
    def scopes(self) -> list[str]:
        return self.scope.split()


class AccessTokenRecord(BaseModel):
    """Mapping from a locally issued opaque token to the upstream tokens."""

    token: str
    upstream_access_token: str
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    client_id: str
    scopes: list[str] = Field(default_factory=list)
    expires_in_seconds: int
    expires_at: float

    def is_expired(self, now: float = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def remaining_seconds(self, now: float = None) -> int:
        remaining = self.expires_at - (now if now is not None else time.time())
        return max(0, int(remaining))


class TokenInfo(BaseModel):
    """Result of verifying an opaque token. Never carries upstream tokens."""

    token: str
    client_id: str
    scopes: list[str] = Field(default_factory=list)
    expires_in: int


class AuthorizationRequest(BaseModel):
    """Parameters of one /authorize call, already validated."""

    redirect_uri: str
    code_challenge: str
    state: Optional[str] = None
    scopes: list[str] = Field(default_factory=list)
