"""Authorization Orchestrator: the gateway's /authorize endpoint.

Validation order matters. Until client_id and redirect_uri are verified
against the registration, errors are shown on a gateway page and never
redirected anywhere; after that, errors go back to the client's verified
redirect_uri as OAuth2 error responses.

A redirect_uri that is present must equal a registered URI exactly. It may be
omitted only when the client registered exactly one URI (RFC 6749 3.1.2.3);
that URI is then used.
"""

import logging
import re
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from starlette.datastructures import QueryParams

from gateway.context import Gateway, get_gateway
from gateway.errors import (
    ClientError,
    InvalidRequest,
    InvalidScope,
    RedirectUriMismatch,
    UnsupportedResponseType,
)
from gateway.models import AuthorizationRequest, ClientRegistration
from gateway.redirects import client_error_redirect, error_page, redirect_to
from gateway.registry import describe
from gateway.state_codec import PURPOSE_CONSENT, PURPOSE_STATE
from gateway.upstream import generate_code_verifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["authorize"])

CODE_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
MAX_STATE_LENGTH = 512


def resolve_redirect_uri(client: ClientRegistration, redirect_uri: str) -> str:
    """Return the redirect_uri if it exactly matches a registered one."""
    if not redirect_uri:
        if len(client.redirect_uris) == 1:
            return client.redirect_uris[0]
        raise RedirectUriMismatch("redirect_uri is required")
    if not client.allows_redirect(redirect_uri):
        raise RedirectUriMismatch("redirect_uri is not registered for this client")
    return redirect_uri


def parse_scope(scope_param: str, supported: list[str]) -> str:
    requested = list(dict.fromkeys(scope_param.split())) if scope_param else list(supported)
    unknown = [s for s in requested if s not in supported]
    if unknown:
        raise InvalidScope(f"unsupported scope: {' '.join(unknown)}")
    return " ".join(requested)


def build_request(
    config,
    client: ClientRegistration,
    redirect_uri: str,
    params: QueryParams,
) -> AuthorizationRequest:
    """Validate the remaining authorize parameters.

    Raises ClientError subclasses that are reported to the client by redirect.
    """
    response_type = params.get("response_type", "")
    if response_type != "code":
        raise UnsupportedResponseType("response_type must be code")

    state = params.get("state")
    if state is not None and (len(state) > MAX_STATE_LENGTH or not state.isprintable()):
        raise InvalidRequest("invalid state parameter")

    code_challenge = params.get("code_challenge", "")
    if not code_challenge:
        raise InvalidRequest("code_challenge is required")
    if not CODE_CHALLENGE_RE.match(code_challenge):
        raise InvalidRequest("invalid code_challenge")
    if params.get("code_challenge_method", "") != "S256":
        raise InvalidRequest("code_challenge_method must be S256")

    return AuthorizationRequest(
        response_type=response_type,
        client_id=client.client_id,
        redirect_uri=redirect_uri,
        scope=parse_scope(params.get("scope", ""), config.scopes),
        state=state,
        code_challenge=code_challenge,
        code_challenge_method="S256",
        resource=params.get("resource") or None,
    )


def has_consent(gateway: Gateway, client_id: str, principal, scopes: list[str]) -> bool:
    if not principal:
        return False
    decision = gateway.store.get_consent(client_id, principal)
    return decision is not None and decision.covers(scopes)


def redirect_upstream(gateway: Gateway, req: AuthorizationRequest):
    """Seal the request into the state blob and send the browser upstream."""
    req = req.model_copy(update={"upstream_code_verifier": generate_code_verifier()})
    state_blob = gateway.codec.encode(req, PURPOSE_STATE)
    logger.info(f"[AUTHORIZE] Redirecting client {req.client_id} upstream")
    return redirect_to(gateway.upstream.authorize_url(state_blob, req))


def redirect_to_consent(gateway: Gateway, req: AuthorizationRequest):
    pending = gateway.codec.encode(req, PURPOSE_CONSENT)
    logger.info(f"[AUTHORIZE] Consent required for client {req.client_id}")
    return redirect_to(f"{gateway.config.base_url}/consent?{urlencode({'request': pending})}")


@router.get("/authorize")
async def authorize(request: Request, gateway: Gateway = Depends(get_gateway)):
    """OAuth 2.0 Authorization Endpoint."""
    params = request.query_params

    try:
        client = describe(gateway.store, params.get("client_id", ""))
        redirect_uri = resolve_redirect_uri(client, params.get("redirect_uri", ""))
    except ClientError as e:
        logger.warning(f"[AUTHORIZE] Rejected authorization ({type(e).__name__}): {e.description}")
        return error_page(request, 400, title="Invalid request", message=e.description)

    try:
        req = build_request(gateway.config, client, redirect_uri, params)
    except ClientError as e:
        logger.info(f"[AUTHORIZE] Invalid request from client {client.client_id}: {e.error}")
        return client_error_redirect(redirect_uri, e.error, params.get("state"), e.description)

    principal = gateway.principal_from(request)
    if not has_consent(gateway, req.client_id, principal, req.scopes):
        return redirect_to_consent(gateway, req)
    return redirect_upstream(gateway, req)
