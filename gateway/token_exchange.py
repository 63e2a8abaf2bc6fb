"""Token Exchange Service: the gateway's /token endpoint.

Client codes are single-use. The PKCE check happens before the code is
consumed; consumption itself is an atomic check-and-set in the store, so of
two racing requests for the same code exactly one reaches the upstream
provider.
"""

import hmac
import json
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from gateway.callback import hash_code
from gateway.context import Gateway, get_gateway
from gateway.errors import (
    InvalidGrant,
    InvalidRequest,
    ReplayError,
    StateError,
    UnsupportedGrantType,
)
from gateway.middleware import preflight_response, with_cors
from gateway.models import UpstreamToken
from gateway.redirects import NO_STORE_HEADERS
from gateway.state_codec import PURPOSE_UPSTREAM
from gateway.upstream import pkce_challenge

logger = logging.getLogger(__name__)

router = APIRouter(tags=["token"])

TOKEN_FIELDS = ("grant_type", "code", "redirect_uri", "client_id", "code_verifier", "refresh_token", "resource")


def verify_pkce(code_verifier: str, code_challenge: str) -> bool:
    try:
        expected = pkce_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode("ascii"), code_challenge.encode("ascii"))


async def exchange_authorization_code(
    gateway: Gateway,
    code: Optional[str],
    code_verifier: Optional[str],
    client_id: Optional[str],
    redirect_uri: Optional[str] = None,
    resource: Optional[str] = None,
) -> UpstreamToken:
    if not code or not code_verifier or not client_id:
        raise InvalidRequest("code, code_verifier and client_id are required")

    code_hash = hash_code(code)
    pending = gateway.store.get_pending_code(code_hash)
    if pending is None:
        raise InvalidGrant("authorization code is invalid")
    if pending.consumed_at is not None:
        logger.warning(
            f"[TOKEN] Replay of a redeemed code for client {pending.client_id}; "
            "tokens issued for it should be treated as compromised"
        )
        raise ReplayError("authorization code has already been used")
    if time.time() >= pending.expires_at:
        raise InvalidGrant("authorization code expired")
    if pending.client_id != client_id:
        raise InvalidGrant("authorization code was issued to another client")
    if redirect_uri and redirect_uri != pending.redirect_uri:
        raise InvalidGrant("redirect_uri does not match the authorization request")
    if resource and pending.resource and resource != pending.resource:
        raise InvalidGrant("resource does not match the authorization request")
    if not verify_pkce(code_verifier, pending.code_challenge):
        raise InvalidGrant("PKCE verification failed")

    if not gateway.store.consume_pending_code(code_hash):
        logger.warning(
            f"[TOKEN] Concurrent replay of a code for client {pending.client_id}; "
            "tokens issued for it should be treated as compromised"
        )
        raise ReplayError("authorization code has already been used")

    try:
        sealed = json.loads(gateway.codec.unseal(pending.sealed_upstream, PURPOSE_UPSTREAM))
    except (StateError, ValueError):
        logger.error(f"[TOKEN] Stored upstream grant for client {client_id} could not be unsealed")
        raise InvalidGrant("authorization code is invalid") from None

    if pending.exchange_mode == "eager":
        token = UpstreamToken.model_validate(sealed["tokens"])
    else:
        token = await gateway.upstream.exchange_code(sealed["code"], sealed.get("code_verifier"))

    logger.info(f"[TOKEN] Issued tokens for client {client_id} (authorization_code)")
    return token


async def exchange_refresh_token(
    gateway: Gateway,
    refresh_token: Optional[str],
    client_id: Optional[str],
) -> UpstreamToken:
    if not refresh_token:
        raise InvalidRequest("refresh_token is required")
    if client_id and gateway.store.get_client(client_id) is None:
        raise InvalidGrant("unknown client")
    token = await gateway.upstream.refresh(refresh_token)
    logger.info(f"[TOKEN] Issued tokens for client {client_id or '-'} (refresh_token)")
    return token


async def token(gateway: Gateway, params: dict) -> UpstreamToken:
    """Dispatch a token request by grant type."""
    grant_type = params.get("grant_type")
    if grant_type == "authorization_code":
        return await exchange_authorization_code(
            gateway,
            code=params.get("code"),
            code_verifier=params.get("code_verifier"),
            client_id=params.get("client_id"),
            redirect_uri=params.get("redirect_uri"),
            resource=params.get("resource"),
        )
    if grant_type == "refresh_token":
        return await exchange_refresh_token(gateway, params.get("refresh_token"), params.get("client_id"))
    if not grant_type:
        raise InvalidRequest("grant_type is required")
    raise UnsupportedGrantType(f"unsupported grant_type: {grant_type}")


async def _read_params(request: Request) -> dict:
    """Form-encoded per RFC 6749; JSON bodies are accepted too."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise InvalidRequest("malformed JSON body") from None
        if not isinstance(data, dict):
            raise InvalidRequest("malformed JSON body")
    else:
        data = await request.form()
    return {k: str(data[k]) for k in TOKEN_FIELDS if data.get(k) is not None}


# ============== Routes ==============

@router.post("/token")
async def token_endpoint(request: Request, gateway: Gateway = Depends(get_gateway)):
    """OAuth 2.0 Token Endpoint."""
    params = await _read_params(request)
    logger.debug(f"[TOKEN] grant_type: {params.get('grant_type')}, client_id: {params.get('client_id')}")
    result = await token(gateway, params)
    return with_cors(JSONResponse(result.to_response(), headers=NO_STORE_HEADERS))


@router.options("/token")
async def token_preflight():
    return preflight_response()
