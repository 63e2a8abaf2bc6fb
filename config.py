"""Config management for the OAuth gateway.

Configuration is resolved once at startup from an optional JSON file
(GATEWAY_CONFIG_FILE) overlaid by environment variables. The resulting
GatewayConfig is read-only and injected into the app; nothing mutates it
after construction.
"""
import base64
import binascii
import json
import os
from pathlib import Path
from types import MappingProxyType
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv


CONFIG_FILE_ENV = "GATEWAY_CONFIG_FILE"

DEFAULT_UPSTREAM_AUTHORITY = "https://login.microsoftonline.com"
DEFAULT_FEDERATED_AUDIENCE = "api://AzureADTokenExchange"
DEFAULT_SCOPES = "openid profile email offline_access"

# Environment variable -> config key
ENV_KEYS = {
    "GATEWAY_BASE_URL": "base_url",
    "GATEWAY_STATE_KEY": "state_key",
    "GATEWAY_STATE_IV": "state_iv",
    "UPSTREAM_TENANT_ID": "tenant_id",
    "UPSTREAM_APPLICATION_ID": "application_id",
    "MANAGED_IDENTITY_CLIENT_ID": "managed_identity_client_id",
    "FEDERATED_CREDENTIAL_AUDIENCE": "federated_audience",
    "UPSTREAM_AUTHORITY": "upstream_authority",
    "UPSTREAM_SCOPES": "upstream_scopes",
    "GATEWAY_SCOPES": "scopes",
    "STATE_TTL_SECONDS": "state_ttl_seconds",
    "CODE_TTL_SECONDS": "code_ttl_seconds",
    "CONSENT_TTL_SECONDS": "consent_ttl_seconds",
    "UPSTREAM_TIMEOUT_SECONDS": "upstream_timeout_seconds",
    "TOKEN_EXCHANGE_MODE": "token_exchange_mode",
    "STORE_BACKEND": "store_backend",
    "SUPABASE_URL": "supabase_url",
    "SUPABASE_KEY": "supabase_key",
    "IDENTITY_ENDPOINT": "identity_endpoint",
    "IDENTITY_HEADER": "identity_header",
    "GATEWAY_HOST": "host",
    "GATEWAY_PORT": "port",
    "LOG_LEVEL": "log_level",
    "SERVICE_NAME": "service_name",
}

REQUIRED_KEYS = ("base_url", "state_key", "state_iv", "tenant_id", "application_id")


class ConfigError(Exception):
    """Raised when the deployment configuration is missing or invalid."""


def _decode_b64(value: str, name: str, length: int) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise ConfigError(f"{name} is not valid base64url: {e}") from None
    if len(raw) != length:
        raise ConfigError(f"{name} must decode to {length} bytes, got {len(raw)}")
    return raw


def _as_int(data: dict, key: str, default: int) -> int:
    value = data.get(key)
    if value in (None, ""):
        return default
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {value!r}") from None
    if result <= 0:
        raise ConfigError(f"{key} must be positive, got {result}")
    return result


class GatewayConfig:
    """Read-only configuration container."""

    def __init__(self, data: dict = None):
        data = dict(data or {})
        missing = [key for key in REQUIRED_KEYS if not data.get(key)]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

        base_url = str(data["base_url"]).rstrip("/")
        parsed = urlparse(base_url)
        if parsed.scheme not in ("https", "http") or not parsed.netloc:
            raise ConfigError(f"base_url must be an absolute URL, got {base_url!r}")
        data["base_url"] = base_url

        self._state_key = _decode_b64(str(data["state_key"]), "state_key", 32)
        self._state_iv = _decode_b64(str(data["state_iv"]), "state_iv", 16)

        mode = (data.get("token_exchange_mode") or "lazy").lower()
        if mode not in ("lazy", "eager"):
            raise ConfigError(f"token_exchange_mode must be 'lazy' or 'eager', got {mode!r}")
        data["token_exchange_mode"] = mode

        backend = (data.get("store_backend") or "memory").lower()
        if backend not in ("memory", "supabase"):
            raise ConfigError(f"store_backend must be 'memory' or 'supabase', got {backend!r}")
        if backend == "supabase" and not (data.get("supabase_url") and data.get("supabase_key")):
            raise ConfigError("store_backend 'supabase' requires supabase_url and supabase_key")
        data["store_backend"] = backend

        for key, default in (
            ("state_ttl_seconds", 600),
            ("code_ttl_seconds", 300),
            ("consent_ttl_seconds", 30 * 24 * 60 * 60),
            ("upstream_timeout_seconds", 10),
            ("port", 8080),
        ):
            data[key] = _as_int(data, key, default)

        self._data = MappingProxyType(data)

    # ---- gateway surface ----

    @property
    def base_url(self) -> str:
        return self._data["base_url"]

    @property
    def callback_url(self) -> str:
        return f"{self.base_url}/oauth-callback"

    @property
    def scopes(self) -> list[str]:
        return (self._data.get("scopes") or DEFAULT_SCOPES).split()

    @property
    def host(self) -> str:
        return self._data.get("host") or "0.0.0.0"

    @property
    def port(self) -> int:
        return self._data["port"]

    # ---- state codec ----

    @property
    def state_key(self) -> bytes:
        return self._state_key

    @property
    def state_iv(self) -> bytes:
        return self._state_iv

    # ---- lifetimes ----

    @property
    def state_ttl_seconds(self) -> int:
        return self._data["state_ttl_seconds"]

    @property
    def code_ttl_seconds(self) -> int:
        return self._data["code_ttl_seconds"]

    @property
    def consent_ttl_seconds(self) -> int:
        return self._data["consent_ttl_seconds"]

    # ---- upstream provider ----

    @property
    def tenant_id(self) -> str:
        return self._data["tenant_id"]

    @property
    def application_id(self) -> str:
        return self._data["application_id"]

    @property
    def managed_identity_client_id(self) -> Optional[str]:
        return self._data.get("managed_identity_client_id")

    @property
    def federated_audience(self) -> str:
        return self._data.get("federated_audience") or DEFAULT_FEDERATED_AUDIENCE

    @property
    def upstream_authority(self) -> str:
        return (self._data.get("upstream_authority") or DEFAULT_UPSTREAM_AUTHORITY).rstrip("/")

    @property
    def upstream_authorize_endpoint(self) -> str:
        return f"{self.upstream_authority}/{self.tenant_id}/oauth2/v2.0/authorize"

    @property
    def upstream_token_endpoint(self) -> str:
        return f"{self.upstream_authority}/{self.tenant_id}/oauth2/v2.0/token"

    @property
    def upstream_scopes(self) -> str:
        return self._data.get("upstream_scopes") or DEFAULT_SCOPES

    @property
    def upstream_timeout_seconds(self) -> int:
        return self._data["upstream_timeout_seconds"]

    @property
    def token_exchange_mode(self) -> str:
        return self._data["token_exchange_mode"]

    @property
    def identity_endpoint(self) -> Optional[str]:
        return self._data.get("identity_endpoint")

    @property
    def identity_header(self) -> Optional[str]:
        return self._data.get("identity_header")

    # ---- storage / logging ----

    @property
    def store_backend(self) -> str:
        return self._data["store_backend"]

    @property
    def supabase_url(self) -> Optional[str]:
        return self._data.get("supabase_url")

    @property
    def supabase_key(self) -> Optional[str]:
        return self._data.get("supabase_key")

    @property
    def log_level(self) -> str:
        return (self._data.get("log_level") or "INFO").upper()

    @property
    def service_name(self) -> str:
        return self._data.get("service_name") or "oauth-gateway"

    def __repr__(self) -> str:
        return f"GatewayConfig(base_url={self.base_url!r}, tenant_id={self.tenant_id!r})"


def load_config(path: Optional[str] = None, environ: Optional[dict] = None) -> GatewayConfig:
    """Load config from an optional JSON file overlaid by the environment.

    Args:
        path: JSON config file. Defaults to $GATEWAY_CONFIG_FILE when set.
        environ: Environment mapping, defaults to os.environ (after loading .env).

    Raises:
        ConfigError: if the file is unreadable or required values are missing.
    """
    if environ is None:
        _env_file = Path(".env")
        if _env_file.exists():
            load_dotenv(_env_file)
        environ = os.environ

    data: dict = {}
    path = path or environ.get(CONFIG_FILE_ENV)
    if path:
        try:
            with open(path, "r") as f:
                data.update(json.load(f))
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(f"Could not read config file {path}: {e}") from None

    for env_name, key in ENV_KEYS.items():
        value = environ.get(env_name)
        if value not in (None, ""):
            data[key] = value

    return GatewayConfig(data)
