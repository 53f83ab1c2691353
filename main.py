"""MCP OAuth Proxy - OAuth 2.0 front door for an MCP server.

It handles:
- OAuth flow for MCP clients, proxied to an upstream IDP (oauth/)
- MCP protocol endpoints via Streamable HTTP (/mcp)
- Legacy SSE endpoints for backward compatibility (/sse, /messages)

Clients only ever see opaque tokens minted here; the upstream tokens stay in
the token vault.
"""
import logging
from contextlib import asynccontextmanager

import anyio
import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Config, load_config
from errors import ConfigurationError, ErrorEnvelopeMiddleware
from logging_config import setup_logging
from oauth.endpoints import create_oauth_router
from oauth.middleware import BearerGate
from oauth.provider import OAuthProxyProvider
from oauth.stores import TokenVault, create_token_vault
from sessions.event_stream import EventStreamSessions
from sessions.streamable import StatelessStreamableHTTP, StreamableHTTPSessions
from sse import create_sse_router
from streamable_http import create_stateless_router, create_streamable_router

logger = logging.getLogger(__name__)

SERVICE_NAME = "mcp-oauth-proxy"
VERSION = "1.0.0"


def create_app(
    config: Config,
    vault: TokenVault = None,
    http_client: httpx.AsyncClient = None,
    server=None,
) -> FastAPI:
    """Assemble the FastAPI app.

    Args:
        config: Validated service config.
        vault: Token vault; built from TOKEN_STORAGE_STRATEGY when omitted.
        http_client: Client for upstream IDP calls; owned by the provider when omitted.
        server: Low-level MCP server; the bundled tools server when omitted.
    """
    if server is None:
        from tools import create_server

        server = create_server()
    if vault is None:
        vault = create_token_vault(config)

    provider = OAuthProxyProvider.from_config(config, vault, http_client=http_client)
    gate = BearerGate(
        provider,
        required_scopes=[],
        resource_metadata_url=f"{config.base_url}/.well-known/oauth-protected-resource",
    )
    sse_sessions = EventStreamSessions(server, endpoint="/messages", idle_timeout=config.sse_idle_timeout)
    if config.stateless:
        streamable_sessions = StatelessStreamableHTTP(server, json_response=config.json_response)
        streamable_router = create_stateless_router(streamable_sessions, gate)
    else:
        streamable_sessions = StreamableHTTPSessions(server, json_response=config.json_response)
        streamable_router = create_streamable_router(streamable_sessions, gate)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[STARTUP] {SERVICE_NAME} {VERSION} serving {config.base_url}")
        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(vault.run_maintenance, config.token_sweep_interval)
                async with streamable_sessions.run():
                    yield
                tg.cancel_scope.cancel()
        finally:
            await sse_sessions.registry.close_all()
            await provider.aclose()
            await vault.aclose()
            logger.info("[SHUTDOWN] Provider and token vault closed")

    app = FastAPI(
        title="MCP OAuth Proxy",
        description="OAuth 2.0 authorization-code proxy in front of an MCP server",
        version=VERSION,
        lifespan=lifespan,
    )

    # Added first so CORS headers also land on error envelopes
    app.add_middleware(ErrorEnvelopeMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["mcp-session-id"],
    )

    app.state.config = config
    app.state.vault = vault
    app.state.provider = provider
    app.state.sse_sessions = sse_sessions
    app.state.streamable_sessions = streamable_sessions

    # ============== Include Routers ==============

    app.include_router(create_oauth_router(provider, config))
    app.include_router(create_sse_router(sse_sessions, gate))
    app.include_router(streamable_router)

    # ============== Server Info Endpoints ==============

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        storage_ok = await vault.ping()
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "storage": config.storage_strategy,
            "storage_ok": storage_ok,
        }

    @app.get("/")
    async def root():
        """Root endpoint with server info."""
        response = {
            "name": "MCP OAuth Proxy",
            "version": VERSION,
            "streamable_http_mode": "stateless" if config.stateless else "stateful",
            "endpoints": {
                "streamable_http": "/mcp",
                "sse": "/sse",
            },
            "client_compatibility": {
                "recommended": "/mcp",
                "fallback": "/sse (use if /mcp doesn't work)",
            },
            "oauth": {
                "protected_resource": f"{config.base_url}/.well-known/oauth-protected-resource",
                "authorization_server": f"{config.base_url}/.well-known/oauth-authorization-server",
            },
            "sessions": {
                "sse": len(sse_sessions.registry),
                "streamable_http": 0 if config.stateless else len(streamable_sessions.registry),
            },
        }
        return response

    return app


# ============== Main Entry Point ==============

def main():
    config = load_config()
    setup_logging(SERVICE_NAME, level=config.log_level, json_logs=config.json_logs)
    try:
        config.validate()
    except ConfigurationError as e:
        logger.error(f"[STARTUP] {e.message}")
        raise SystemExit(1) from e

    import uvicorn

    app = create_app(config)
    logger.info(f"Starting {SERVICE_NAME} on {config.host}:{config.port}")
    logger.info("Streamable HTTP endpoint: /mcp")
    logger.info("Legacy SSE endpoint: /sse")
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
