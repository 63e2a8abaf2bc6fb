"""Callback Handler: the upstream provider's redirect target.

Recovers the original authorization request from the encrypted state,
mints a short-lived client-facing code bound to the client's PKCE challenge,
and sends the browser back to the client. Any state failure ends on the
generic error page; nothing about the failure is shown to the user.
"""

import hashlib
import json
import logging
import secrets
import time

from fastapi import APIRouter, Depends, Request

from gateway.context import Gateway, get_gateway
from gateway.errors import GatewayError, StateError, StateReplayed
from gateway.models import AuthorizationRequest, PendingCode
from gateway.redirects import client_error_redirect, client_redirect, error_page
from gateway.state_codec import PURPOSE_STATE, PURPOSE_UPSTREAM
from gateway.upstream import client_error_code

logger = logging.getLogger(__name__)

router = APIRouter(tags=["callback"])


def hash_code(code: str) -> str:
    """Store key for a client code; codes themselves are never stored."""
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def recover_request(gateway: Gateway, state_blob: str) -> AuthorizationRequest:
    """Decode the state and record its nonce so it is usable once."""
    envelope = gateway.codec.decode_envelope(state_blob, PURPOSE_STATE)
    nonce_expires = envelope.issued_at + gateway.codec.ttl_seconds
    if not gateway.store.record_nonce(envelope.nonce, nonce_expires):
        raise StateReplayed("state already used")
    return envelope.request


async def issue_client_code(gateway: Gateway, req: AuthorizationRequest, upstream_code: str) -> str:
    """Mint a client code and record what redeeming it requires."""
    config = gateway.config
    if config.token_exchange_mode == "eager":
        token = await gateway.upstream.exchange_code(upstream_code, req.upstream_code_verifier)
        sealed = {"tokens": token.model_dump()}
    else:
        sealed = {"code": upstream_code, "code_verifier": req.upstream_code_verifier}

    client_code = secrets.token_urlsafe(32)
    now = int(time.time())
    gateway.store.put_pending_code(
        PendingCode(
            code_hash=hash_code(client_code),
            client_id=req.client_id,
            redirect_uri=req.redirect_uri,
            code_challenge=req.code_challenge,
            scope=req.scope,
            resource=req.resource,
            sealed_upstream=gateway.codec.seal(json.dumps(sealed).encode("utf-8"), PURPOSE_UPSTREAM),
            exchange_mode=config.token_exchange_mode,
            created_at=now,
            expires_at=now + config.code_ttl_seconds,
        )
    )
    return client_code


@router.get("/oauth-callback")
async def oauth_callback(request: Request, gateway: Gateway = Depends(get_gateway)):
    """Receive the upstream redirect and forward to the client."""
    params = request.query_params
    state_blob = params.get("state", "")
    upstream_code = params.get("code", "")
    upstream_error = params.get("error")

    try:
        req = recover_request(gateway, state_blob)
    except StateError as e:
        logger.warning(f"[CALLBACK] Rejected state blob ({type(e).__name__})")
        return error_page(request, 400)

    client = gateway.store.get_client(req.client_id)
    if client is None or not client.allows_redirect(req.redirect_uri):
        logger.warning(f"[CALLBACK] Client {req.client_id} no longer matches the recovered request")
        return error_page(request, 400)

    if upstream_error:
        logger.info(f"[CALLBACK] Upstream returned error for client {req.client_id}: {upstream_error}")
        return client_error_redirect(req.redirect_uri, client_error_code(upstream_error), req.state)

    if not upstream_code:
        logger.warning("[CALLBACK] Upstream redirect carried neither code nor error")
        return error_page(request, 400)

    try:
        client_code = await issue_client_code(gateway, req, upstream_code)
    except GatewayError as e:
        logger.error(f"[CALLBACK] Could not issue a client code ({type(e).__name__}): {e.description}")
        return client_error_redirect(req.redirect_uri, e.error if e.error != "invalid_grant" else "server_error", req.state)

    logger.info(f"[CALLBACK] Issued client code for client {req.client_id}")
    return client_redirect(req.redirect_uri, {"code": client_code, "state": req.state})
