"""OAuth proxy provider.

Runs the authorization-code grant against an upstream identity provider and
hands clients a locally issued opaque token instead of the upstream one:
- authorize: redirect to the upstream authorization endpoint (PKCE S256)
- exchange: trade the upstream code for upstream tokens, mint an opaque token
- register: forward dynamic client registration and keep the returned record
- verify: resolve an opaque token for the bearer gate
- revoke: forward revocation of the upstream token (when configured)

The upstream access, refresh and ID tokens never leave this process.
"""

import logging
from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
from mcp.shared.auth import OAuthClientInformationFull, OAuthToken
from pydantic import ValidationError

from config import DEFAULT_SCOPES, DEFAULT_TOKEN_TTL
from errors import (
    ClientRegistrationError,
    ConfigurationError,
    InvalidTokenError,
    TokenExchangeError,
    TokenRevocationError,
)
from logging_config import redact
from oauth.models import AuthorizationRequest, TokenInfo, UpstreamTokenBundle
from oauth.stores import TokenVault

logger = logging.getLogger(__name__)

# Upstream fields that stay server-side
_PRIVATE_TOKEN_FIELDS = ("refresh_token", "id_token")


class OAuthProxyProvider:
    """Authorization-code proxy in front of an upstream IDP."""

    def __init__(
        self,
        *,
        authorization_url: str,
        token_url: str,
        registration_url: str,
        vault: TokenVault,
        revocation_url: str = None,
        http_client: httpx.AsyncClient = None,
        default_scopes: list[str] = None,
        default_token_ttl: int = DEFAULT_TOKEN_TTL,
        timeout: float = 10.0,
    ):
        self.authorization_url = authorization_url
        self.token_url = token_url
        self.registration_url = registration_url
        self.revocation_url = revocation_url
        self.vault = vault
        self.default_scopes = default_scopes or DEFAULT_SCOPES.split()
        self.default_token_ttl = default_token_ttl

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(cls, config, vault: TokenVault, http_client: httpx.AsyncClient = None):
        return cls(
            authorization_url=config.authorization_url,
            token_url=config.token_url,
            registration_url=config.registration_url,
            revocation_url=config.revocation_url,
            vault=vault,
            http_client=http_client,
            default_scopes=config.default_scopes,
            default_token_ttl=config.default_token_ttl,
            timeout=config.upstream_timeout,
        )

    @property
    def revocation_enabled(self) -> bool:
        return bool(self.revocation_url)

    async def get_client(self, client_id: str) -> Optional[OAuthClientInformationFull]:
        return await self.vault.get_client(client_id)

    # ============== Authorization ==============

    def authorize(self, client: OAuthClientInformationFull, params: AuthorizationRequest) -> str:
        """Build the upstream authorization URL for this request."""
        if not client.redirect_uris:
            logger.error(f"[OAUTH] No redirect URI found for client {client.client_id}")
            raise ConfigurationError(f"No redirect URI found for client {client.client_id}")

        query = {
            "client_id": client.client_id,
            "response_type": "code",
            "redirect_uri": params.redirect_uri,
            "code_challenge": params.code_challenge,
            "code_challenge_method": "S256",
        }
        if params.state:
            query["state"] = params.state
        query["scope"] = " ".join(params.scopes or self.default_scopes)

        target = urlsplit(self.authorization_url)
        # Keep any query the upstream URL already carries (e.g. audience)
        search = f"{target.query}&{urlencode(query)}" if target.query else urlencode(query)
        url = urlunsplit((target.scheme, target.netloc, target.path, search, ""))
        logger.debug(f"[OAUTH] Redirecting client {client.client_id} to upstream authorization")
        return url

    # ============== Code exchange ==============

    async def exchange_authorization_code(
        self,
        client: OAuthClientInformationFull,
        authorization_code: str,
        code_verifier: str = None,
        redirect_uri: str = None,
    ) -> OAuthToken:
        """Exchange an upstream code and return tokens carrying an opaque access token."""
        if not redirect_uri:
            if not client.redirect_uris:
                logger.error(f"[OAUTH] No redirect URI found for client {client.client_id}")
                raise ConfigurationError(f"No redirect URI found for client {client.client_id}")
            redirect_uri = str(client.redirect_uris[0])

        form = {
            "grant_type": "authorization_code",
            "client_id": client.client_id,
            "redirect_uri": redirect_uri,
            "code": authorization_code,
        }
        if client.client_secret:
            form["client_secret"] = client.client_secret
        if code_verifier:
            form["code_verifier"] = code_verifier

        logger.debug(f"[OAUTH] Exchanging authorization code for client {client.client_id}")
        try:
            response = await self.http_client.post(
                self.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error(f"[OAUTH] Token exchange request failed: {e}")
            raise TokenExchangeError(f"Token exchange request failed: {e}") from e

        if not response.is_success:
            logger.error(
                f"[OAUTH] Token exchange failed: {response.status_code} {response.reason_phrase} "
                f"{response.text[:500]}"
            )
            raise TokenExchangeError(f"Token exchange failed: {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise TokenExchangeError("Token exchange returned a non-JSON body") from e
        if not isinstance(data, dict) or not data.get("access_token"):
            raise TokenExchangeError("Token exchange response has no access_token")

        expires_in = data.get("expires_in") or self.default_token_ttl
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError) as e:
            raise TokenExchangeError(f"Invalid expires_in from upstream: {expires_in!r}") from e

        opaque_token = await self.vault.save_access_token(
            UpstreamTokenBundle(
                access_token=data["access_token"],
                id_token=data.get("id_token"),
                refresh_token=data.get("refresh_token"),
                client_id=client.client_id,
                scope=data.get("scope") or "",
            ),
            expires_in,
        )

        public = {key: value for key, value in data.items() if key not in _PRIVATE_TOKEN_FIELDS}
        public["access_token"] = opaque_token
        public["expires_in"] = expires_in
        # The opaque token is always a bearer token, whatever upstream issued
        public.pop("token_type", None)
        try:
            tokens = OAuthToken.model_validate(public)
        except ValidationError as e:
            raise TokenExchangeError(f"Token exchange response is malformed: {e}") from e

        logger.info(f"[OAUTH] Issued opaque token {redact(opaque_token)} for client {client.client_id}")
        return tokens

    # ============== Dynamic client registration ==============

    async def register_client(self, payload: dict) -> OAuthClientInformationFull:
        """Forward a registration payload upstream and persist the returned client."""
        try:
            response = await self.http_client.post(
                self.registration_url,
                json=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error(f"[OAUTH] Client registration request failed: {e}")
            raise ClientRegistrationError(f"Client registration request failed: {e}") from e

        if not response.is_success:
            logger.error(f"[OAUTH] Client registration failed: {response.status_code} {response.text[:500]}")
            raise ClientRegistrationError(f"Client registration failed: {response.status_code}")

        try:
            client = OAuthClientInformationFull.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"[OAUTH] Upstream returned an invalid client record: {e}")
            raise ClientRegistrationError("Upstream returned an invalid client record") from e

        # The base provider keeps nothing, so this is the only copy of the record
        await self.vault.save_client(client.client_id, client)
        logger.info(f"[OAUTH] Registered client: {client.client_id}")
        return client

    # ============== Token verification ==============

    async def verify_access_token(self, token: str) -> TokenInfo:
        record = await self.vault.get_access_token(token)
        if record is None:
            raise InvalidTokenError("Invalid access token")
        return TokenInfo(
            token=token,
            client_id=record.client_id,
            scopes=record.scopes,
            expires_in=record.remaining_seconds(),
        )

    # ============== Revocation ==============

    async def revoke_token(self, token: str, client: OAuthClientInformationFull = None) -> None:
        """Revoke the upstream token behind an opaque token (RFC 7009).

        Unknown tokens are ignored. The local mapping expires on its TTL.
        """
        if not self.revocation_url:
            return

        record = await self.vault.get_access_token(token)
        if record is None:
            logger.info(f"[OAUTH] Revocation requested for unknown token {redact(token)}")
            return
        if client is not None and client.client_id != record.client_id:
            logger.warning(f"[OAUTH] Client {client.client_id} tried to revoke a token it does not own")
            return

        form = {
            "token": record.upstream_access_token,
            "token_type_hint": "access_token",
            "client_id": record.client_id,
        }
        if client is not None and client.client_secret:
            form["client_secret"] = client.client_secret

        try:
            response = await self.http_client.post(self.revocation_url, data=form)
        except httpx.HTTPError as e:
            raise TokenRevocationError(f"Token revocation request failed: {e}") from e
        if not response.is_success:
            logger.error(f"[OAUTH] Token revocation failed: {response.status_code}")
            raise TokenRevocationError(f"Token revocation failed: {response.status_code}")
        logger.info(f"[OAUTH] Revoked upstream token for client {record.client_id}")

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()
