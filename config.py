"""Config management for mcp-oauth-proxy.

Settings come from environment variables, optionally loaded from a .env file.
Missing required settings are reported all at once and stop startup.
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from errors import ConfigurationError

REQUIRED_SETTINGS = (
    "OAUTH_ISSUER_URL",
    "OAUTH_AUTHORIZATION_URL",
    "OAUTH_TOKEN_URL",
    "OAUTH_REGISTRATION_URL",
    "THIS_HOSTNAME",
)

DEFAULT_SCOPES = "openid email profile"
DEFAULT_TOKEN_TTL = 24 * 60 * 60  # 1 day
SSE_IDLE_TIMEOUT = 6 * 60 * 60  # 6 hours


def _as_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Configuration container."""

    def __init__(self, data: dict = None):
        self.data = data or {}

    def _get(self, key: str, default: str = None) -> Optional[str]:
        value = self.data.get(key)
        if value is None or value == "":
            return default
        return value

    # ---- OAuth proxy ----

    @property
    def issuer_url(self) -> Optional[str]:
        return self._get("OAUTH_ISSUER_URL")

    @property
    def authorization_url(self) -> Optional[str]:
        return self._get("OAUTH_AUTHORIZATION_URL")

    @property
    def token_url(self) -> Optional[str]:
        return self._get("OAUTH_TOKEN_URL")

    @property
    def registration_url(self) -> Optional[str]:
        return self._get("OAUTH_REGISTRATION_URL")

    @property
    def revocation_url(self) -> Optional[str]:
        return self._get("OAUTH_REVOCATION_URL")

    @property
    def base_url(self) -> Optional[str]:
        """Externally visible URL of this service."""
        value = self._get("THIS_HOSTNAME")
        return value.rstrip("/") if value else value

    @property
    def default_scopes(self) -> list[str]:
        return self._get("OAUTH_DEFAULT_SCOPES", DEFAULT_SCOPES).split()

    @property
    def default_token_ttl(self) -> int:
        return int(self._get("DEFAULT_TOKEN_TTL", str(DEFAULT_TOKEN_TTL)))

    @property
    def upstream_timeout(self) -> float:
        return float(self._get("UPSTREAM_TIMEOUT", "10"))

    # ---- Token storage ----

    @property
    def storage_strategy(self) -> str:
        return self._get("TOKEN_STORAGE_STRATEGY", "memory").lower()

    @property
    def redis_host(self) -> str:
        return self._get("REDIS_HOST", "localhost")

    @property
    def redis_port(self) -> int:
        return int(self._get("REDIS_PORT", "6379"))

    @property
    def redis_db(self) -> int:
        return int(self._get("REDIS_DB", "0"))

    @property
    def redis_password(self) -> Optional[str]:
        return self._get("REDIS_PASSWORD")

    @property
    def redis_ssl(self) -> bool:
        return _as_bool(self._get("REDIS_SSL"))

    @property
    def redis_key_prefix(self) -> str:
        return self._get("REDIS_KEY_PREFIX", "oauth_proxy")

    @property
    def token_sweep_interval(self) -> float:
        return float(self._get("TOKEN_SWEEP_INTERVAL", "60"))

    # ---- Transports ----

    @property
    def sse_idle_timeout(self) -> float:
        return float(self._get("SSE_IDLE_TIMEOUT", str(SSE_IDLE_TIMEOUT)))

    @property
    def json_response(self) -> bool:
        return _as_bool(self._get("MCP_JSON_RESPONSE"))

    @property
    def stateless(self) -> bool:
        """Serve /mcp without sessions (one transport per POST)."""
        return _as_bool(self._get("MCP_STATELESS"))

    # ---- Server ----

    @property
    def host(self) -> str:
        return self._get("HOST", "0.0.0.0")

    @property
    def port(self) -> int:
        return int(self._get("PORT", "5050"))

    @property
    def log_level(self) -> str:
        return self._get("LOG_LEVEL", "INFO").upper()

    @property
    def json_logs(self) -> bool:
        return self._get("LOG_FORMAT", "plain").lower() == "json"

    def missing(self) -> list[str]:
        """Names of required settings that are not set."""
        return [key for key in REQUIRED_SETTINGS if not self._get(key)]

    def validate(self) -> "Config":
        """Raise ConfigurationError if any required setting is absent."""
        missing = self.missing()
        if missing:
            raise ConfigurationError(f"Missing environment variables: {', '.join(missing)}")
        if self.storage_strategy not in ("memory", "redis"):
            raise ConfigurationError(
                f"Unknown TOKEN_STORAGE_STRATEGY: {self.storage_strategy!r} (expected memory or redis)"
            )
        return self


def load_config(environ: dict = None, env_file: Path = None) -> Config:
    """Load config from the environment.

    A local .env file is loaded first (without overriding real environment
    variables) unless an explicit environ mapping is given.
    """
    if environ is None:
        _env_file = env_file or Path(".env")
        if _env_file.exists():
            load_dotenv(_env_file)
        environ = os.environ
    return Config(dict(environ))
