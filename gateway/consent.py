"""Consent Manager: records a user's approval or denial of a client's scopes.

The pending authorization request travels in the consent form as an
encrypted blob, so there is no server-side session. Decisions are recorded
per (client_id, browser principal).
"""

import hmac
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse

from gateway.authorize import redirect_upstream
from gateway.context import Gateway, get_gateway
from gateway.errors import ClientError, ConsentDenied, StateError
from gateway.jwt_utils import PRINCIPAL_COOKIE_NAME, PRINCIPAL_EXPIRE_SECONDS, create_principal_token
from gateway.models import AuthorizationRequest, ConsentDecision
from gateway.redirects import client_error_redirect, error_page
from gateway.registry import describe
from gateway.state_codec import PURPOSE_CONSENT
from gateway.templates import render_consent_page

logger = logging.getLogger(__name__)

router = APIRouter(tags=["consent"])


def granted_scopes(requested: list[str], submitted: Optional[list[str]]) -> list[str]:
    """Scopes the user approved, never more than were requested."""
    if submitted is None:
        return list(requested)
    chosen = set(submitted)
    return [s for s in requested if s in chosen]


def record_decision(
    gateway: Gateway,
    req: AuthorizationRequest,
    principal: str,
    approved: bool,
    scopes: list[str],
) -> ConsentDecision:
    now = int(time.time())
    decision = ConsentDecision(
        client_id=req.client_id,
        user_principal=principal,
        granted_scopes=scopes if approved else [],
        decision="approved" if approved else "denied",
        timestamp=now,
        expires_at=now + gateway.config.consent_ttl_seconds,
    )
    gateway.store.put_consent(decision)
    logger.info(f"[CONSENT] Client {req.client_id}: {decision.decision} ({len(decision.granted_scopes)} scopes)")
    return decision


def present_consent(gateway: Gateway, request_blob: str, principal_token: str) -> str:
    """Render the consent form for a pending request."""
    req = gateway.codec.decode(request_blob, PURPOSE_CONSENT)
    client = describe(gateway.store, req.client_id)
    return render_consent_page(
        client_name=client.client_name,
        scopes=req.scopes,
        redirect_uri=req.redirect_uri,
        request_blob=request_blob,
        csrf_token=principal_token,
        form_action=f"{gateway.config.base_url}/consent",
    )


def submit_consent(
    gateway: Gateway,
    req: AuthorizationRequest,
    principal: str,
    action: str,
    submitted_scopes: Optional[list[str]],
):
    """Record the decision and either resume the flow or deny the client."""
    approved = action == "approve"
    scopes = granted_scopes(req.scopes, submitted_scopes) if approved else []
    if approved and req.scopes and not scopes:
        approved = False

    record_decision(gateway, req, principal, approved, scopes)

    if not approved:
        denied = ConsentDenied("The user denied the request")
        return client_error_redirect(req.redirect_uri, denied.error, req.state, denied.description)
    return redirect_upstream(gateway, req.model_copy(update={"scope": " ".join(scopes)}))


# ============== Routes ==============

@router.get("/consent")
async def consent_page(request: Request, gateway: Gateway = Depends(get_gateway)):
    """Show the consent form."""
    request_blob = request.query_params.get("request", "")
    principal = gateway.principal_from(request)
    # Re-sign on each visit to keep the principal and extend its lifetime
    principal_token = create_principal_token(gateway.principal_key, gateway.config.base_url, principal)

    try:
        html = present_consent(gateway, request_blob, principal_token)
    except (StateError, ClientError) as e:
        logger.warning(f"[CONSENT] Rejected consent page ({type(e).__name__})")
        return error_page(request, 400)

    response = HTMLResponse(html, headers={"Cache-Control": "no-store", "X-Frame-Options": "DENY"})
    response.set_cookie(
        PRINCIPAL_COOKIE_NAME,
        principal_token,
        max_age=PRINCIPAL_EXPIRE_SECONDS,
        httponly=True,
        secure=True,
        samesite="lax",
    )
    return response


@router.post("/consent")
async def consent_submit(
    request: Request,
    gateway: Gateway = Depends(get_gateway),
):
    """Handle consent form submission."""
    form = await request.form()
    request_blob = form.get("request", "")
    action = form.get("action", "")
    csrf_token = str(form.get("csrf_token", ""))
    # The rendered form marks that it listed scopes; an unticked set then means none
    submitted_scopes = [str(s) for s in form.getlist("scope")] if "scopes_presented" in form else None

    cookie_token = request.cookies.get(PRINCIPAL_COOKIE_NAME, "")
    principal = gateway.principal_from(request)
    if not principal or not hmac.compare_digest(csrf_token.encode(), cookie_token.encode()):
        logger.warning("[CONSENT] Missing or mismatched principal on consent submission")
        return error_page(request, 400)
    if action not in ("approve", "deny"):
        return error_page(request, 400)

    try:
        req = gateway.codec.decode(str(request_blob), PURPOSE_CONSENT)
        client = describe(gateway.store, req.client_id)
    except (StateError, ClientError) as e:
        logger.warning(f"[CONSENT] Rejected consent submission ({type(e).__name__})")
        return error_page(request, 400)

    if not client.allows_redirect(req.redirect_uri):
        return error_page(request, 400)

    return submit_consent(gateway, req, principal, action, submitted_scopes)
