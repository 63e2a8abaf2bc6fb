"""Metadata Publisher: discovery documents derived only from configuration."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from gateway.context import Gateway, get_gateway
from gateway.middleware import preflight_response, with_cors

router = APIRouter(tags=["metadata"])


def authorization_server_metadata(config) -> dict:
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    base_url = config.base_url
    return {
        "issuer": base_url,
        "authorization_endpoint": f"{base_url}/authorize",
        "token_endpoint": f"{base_url}/token",
        "registration_endpoint": f"{base_url}/register",
        "scopes_supported": config.scopes,
        "response_types_supported": ["code"],
        "response_modes_supported": ["query"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_methods_supported": ["none"],
        "code_challenge_methods_supported": ["S256"],
    }


def protected_resource_metadata(config) -> dict:
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    return {
        "resource": config.base_url,
        "authorization_servers": [config.base_url],
        "scopes_supported": config.scopes,
        "bearer_methods_supported": ["header"],
    }


@router.get("/.well-known/oauth-authorization-server")
async def oauth_authorization_server(gateway: Gateway = Depends(get_gateway)):
    return with_cors(JSONResponse(authorization_server_metadata(gateway.config)))


@router.options("/.well-known/oauth-authorization-server")
async def oauth_authorization_server_preflight():
    return preflight_response()


@router.get("/.well-known/oauth-protected-resource")
async def oauth_protected_resource(gateway: Gateway = Depends(get_gateway)):
    return with_cors(JSONResponse(protected_resource_metadata(gateway.config)))
