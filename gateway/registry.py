"""Client Registry: OAuth 2.0 Dynamic Client Registration (RFC 7591).

Registration is unauthenticated. Every client is public (no secret) and is
bound to the exact set of redirect URIs it registers.
"""

import ipaddress
import logging
import secrets
from typing import Any
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from gateway.context import Gateway, get_gateway
from gateway.errors import InvalidClientMetadata, InvalidRedirectUri, UnknownClient
from gateway.middleware import preflight_response, with_cors
from gateway.models import ClientRegistration
from gateway.stores import GatewayStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["registration"])

MAX_REDIRECT_URIS = 20
MAX_CLIENT_NAME_LENGTH = 200
SUPPORTED_GRANT_TYPES = {"authorization_code", "refresh_token"}
SUPPORTED_RESPONSE_TYPES = {"code"}
LOOPBACK_HOSTS = {"localhost"}


def _is_loopback(host: str) -> bool:
    if host in LOOPBACK_HOSTS:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def validate_redirect_uri(uri: Any) -> str:
    """Accept an absolute https URI, or http on a loopback host."""
    if not isinstance(uri, str) or not uri or uri != uri.strip():
        raise InvalidRedirectUri("redirect_uris must contain non-empty strings")
    try:
        parsed = urlparse(uri)
        host = parsed.hostname
        parsed.port  # raises ValueError on a bad port
    except ValueError:
        raise InvalidRedirectUri(f"malformed redirect_uri: {uri}") from None
    if not host:
        raise InvalidRedirectUri(f"redirect_uri must be absolute: {uri}")
    if parsed.fragment or "#" in uri:
        raise InvalidRedirectUri(f"redirect_uri must not contain a fragment: {uri}")
    if parsed.scheme == "https":
        return uri
    if parsed.scheme == "http" and _is_loopback(host):
        return uri
    raise InvalidRedirectUri(f"redirect_uri must use https (or http on loopback): {uri}")


def _string_list(metadata: dict, key: str, default: list[str], supported: set[str]) -> list[str]:
    value = metadata.get(key, default)
    if not isinstance(value, list) or not value or not all(isinstance(v, str) for v in value):
        raise InvalidClientMetadata(f"{key} must be a non-empty list of strings")
    unsupported = [v for v in value if v not in supported]
    if unsupported:
        raise InvalidClientMetadata(f"unsupported {key}: {', '.join(unsupported)}")
    return list(dict.fromkeys(value))


def register(store: GatewayStore, metadata: Any) -> ClientRegistration:
    """Validate client metadata and store a new registration.

    Raises:
        InvalidClientMetadata / InvalidRedirectUri: on any invalid field.
    """
    if not isinstance(metadata, dict):
        raise InvalidClientMetadata("registration body must be a JSON object")

    redirect_uris = metadata.get("redirect_uris")
    if not isinstance(redirect_uris, list) or not redirect_uris:
        raise InvalidRedirectUri("redirect_uris must be a non-empty list")
    if len(redirect_uris) > MAX_REDIRECT_URIS:
        raise InvalidRedirectUri(f"at most {MAX_REDIRECT_URIS} redirect_uris are allowed")
    redirect_uris = list(dict.fromkeys(validate_redirect_uri(uri) for uri in redirect_uris))

    client_name = metadata.get("client_name", "OAuth Client")
    if not isinstance(client_name, str) or not client_name.strip():
        raise InvalidClientMetadata("client_name must be a non-empty string")
    client_name = client_name.strip()[:MAX_CLIENT_NAME_LENGTH]

    auth_method = metadata.get("token_endpoint_auth_method", "none")
    if auth_method != "none":
        raise InvalidClientMetadata("only public clients (token_endpoint_auth_method=none) are supported")

    grant_types = _string_list(metadata, "grant_types", ["authorization_code", "refresh_token"], SUPPORTED_GRANT_TYPES)
    response_types = _string_list(metadata, "response_types", ["code"], SUPPORTED_RESPONSE_TYPES)

    client = ClientRegistration(
        client_id=secrets.token_urlsafe(24),
        client_name=client_name,
        redirect_uris=redirect_uris,
        grant_types=grant_types,
        response_types=response_types,
        token_endpoint_auth_method=auth_method,
    )
    store.put_client(client)
    logger.info(f"[REGISTER] Registered client {client.client_id} ({len(redirect_uris)} redirect URIs)")
    return client


def describe(store: GatewayStore, client_id: str) -> ClientRegistration:
    """Look up a registration for other components."""
    client = store.get_client(client_id) if client_id else None
    if client is None:
        raise UnknownClient("unknown client_id")
    return client


def registration_response(client: ClientRegistration) -> dict:
    return {
        "client_id": client.client_id,
        "client_id_issued_at": client.created_at,
        "client_name": client.client_name,
        "redirect_uris": client.redirect_uris,
        "grant_types": client.grant_types,
        "response_types": client.response_types,
        "token_endpoint_auth_method": client.token_endpoint_auth_method,
    }


# ============== Routes ==============

@router.post("/register")
async def register_client(request: Request, gateway: Gateway = Depends(get_gateway)):
    """OAuth 2.0 Dynamic Client Registration (RFC 7591)."""
    try:
        metadata = await request.json()
    except ValueError:
        metadata = None

    client = register(gateway.store, metadata)
    return with_cors(JSONResponse(registration_response(client), status_code=201))


@router.options("/register")
async def register_preflight():
    return preflight_response()
