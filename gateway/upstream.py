"""Calls to the upstream identity provider.

The gateway never holds the upstream application's client secret. It
authenticates to the upstream token endpoint with a client assertion: a
managed identity token issued for the federated credential audience, which
the upstream application trusts through a federated identity credential.

Every call carries a bounded timeout and is never retried: an authorization
code exchange is not idempotent.
"""

import asyncio
import base64
import hashlib
import logging
import secrets
import time
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from gateway.errors import InvalidGrant, UpstreamError, UpstreamUnavailable
from gateway.jwt_utils import unverified_expiry
from gateway.models import AuthorizationRequest, FederatedCredentialBinding, UpstreamToken

logger = logging.getLogger(__name__)

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
IMDS_TOKEN_ENDPOINT = "http://169.254.169.254/metadata/identity/oauth2/token"
# Refresh the cached assertion this long before it expires
ASSERTION_REFRESH_MARGIN_SECONDS = 300

# Upstream errors a client is allowed to see verbatim on the callback redirect
PASSTHROUGH_ERRORS = {
    "access_denied",
    "invalid_scope",
    "login_required",
    "consent_required",
    "interaction_required",
    "temporarily_unavailable",
}


def pkce_challenge(verifier: str) -> str:
    """BASE64URL(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    return secrets.token_urlsafe(48)


# ============== Upstream authenticators ==============

class UpstreamAuthenticator(ABC):
    """Supplies client authentication parameters for upstream token requests."""

    @abstractmethod
    async def client_auth_params(self) -> dict: ...


class StaticAssertionAuthenticator(UpstreamAuthenticator):
    """Fixed bearer assertion. For tests and local development."""

    def __init__(self, assertion: str):
        self._assertion = assertion

    async def client_auth_params(self) -> dict:
        return {
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": self._assertion,
        }


class FederatedCredentialAuthenticator(UpstreamAuthenticator):
    """Managed identity token exchanged as a federated client assertion.

    Uses the platform identity endpoint (IDENTITY_ENDPOINT/IDENTITY_HEADER on
    App Service and Functions) when configured, otherwise the instance
    metadata service.
    """

    def __init__(
        self,
        binding: FederatedCredentialBinding,
        http_client: httpx.AsyncClient,
        identity_endpoint: Optional[str] = None,
        identity_header: Optional[str] = None,
    ):
        self.binding = binding
        self._http = http_client
        self._identity_endpoint = identity_endpoint
        self._identity_header = identity_header
        self._assertion: Optional[str] = None
        self._expires_at = 0
        self._lock = asyncio.Lock()

    async def client_auth_params(self) -> dict:
        return {
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": await self._get_assertion(),
        }

    async def _get_assertion(self) -> str:
        async with self._lock:
            if self._assertion and time.time() < self._expires_at - ASSERTION_REFRESH_MARGIN_SECONDS:
                return self._assertion
            token = await self._fetch_managed_identity_token()
            self._assertion = token
            self._expires_at = unverified_expiry(token) or int(time.time()) + 600
            logger.info("[UPSTREAM] Obtained managed identity assertion")
            return token

    async def _fetch_managed_identity_token(self) -> str:
        params = {"resource": self.binding.audience}
        if self.binding.managed_identity_client_id:
            params["client_id"] = self.binding.managed_identity_client_id

        if self._identity_endpoint and self._identity_header:
            url = self._identity_endpoint
            params["api-version"] = "2019-08-01"
            headers = {"X-IDENTITY-HEADER": self._identity_header}
        else:
            url = IMDS_TOKEN_ENDPOINT
            params["api-version"] = "2018-02-01"
            headers = {"Metadata": "true"}

        try:
            response = await self._http.get(url, params=params, headers=headers)
        except httpx.TimeoutException:
            raise UpstreamUnavailable("managed identity endpoint timed out") from None
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"managed identity endpoint unreachable: {type(e).__name__}") from None

        if response.status_code != 200:
            raise UpstreamError(f"managed identity endpoint returned {response.status_code}")
        try:
            token = response.json()["access_token"]
        except (ValueError, KeyError, TypeError):
            raise UpstreamError("managed identity response is malformed") from None
        return token


# ============== Upstream client ==============

class UpstreamClient:
    """Builds upstream authorize redirects and calls the upstream token endpoint."""

    def __init__(self, config, authenticator: UpstreamAuthenticator, http_client: httpx.AsyncClient):
        self.config = config
        self.authenticator = authenticator
        self._http = http_client

    def authorize_url(self, state_blob: str, req: AuthorizationRequest) -> str:
        """Upstream authorize URL for an encoded request.

        Only the gateway's own callback URI goes upstream; the client's
        redirect_uri stays inside the encrypted state.
        """
        params = {
            "client_id": self.config.application_id,
            "response_type": "code",
            "response_mode": "query",
            "redirect_uri": self.config.callback_url,
            "scope": self.config.upstream_scopes,
            "state": state_blob,
        }
        if req.upstream_code_verifier:
            params["code_challenge"] = pkce_challenge(req.upstream_code_verifier)
            params["code_challenge_method"] = "S256"
        return f"{self.config.upstream_authorize_endpoint}?{urlencode(params)}"

    async def exchange_code(self, upstream_code: str, code_verifier: Optional[str] = None) -> UpstreamToken:
        form = {
            "grant_type": "authorization_code",
            "code": upstream_code,
            "redirect_uri": self.config.callback_url,
            "scope": self.config.upstream_scopes,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        return await self._token_request(form)

    async def refresh(self, refresh_token: str) -> UpstreamToken:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "scope": self.config.upstream_scopes,
        }
        return await self._token_request(form)

    async def _token_request(self, form: dict) -> UpstreamToken:
        grant_type = form["grant_type"]
        form = {
            **form,
            "client_id": self.config.application_id,
            **(await self.authenticator.client_auth_params()),
        }
        started = time.monotonic()
        try:
            response = await self._http.post(
                self.config.upstream_token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self.config.upstream_timeout_seconds,
            )
        except httpx.TimeoutException:
            logger.error(f"[UPSTREAM] Token request ({grant_type}) timed out")
            raise UpstreamUnavailable("identity provider timed out") from None
        except httpx.HTTPError as e:
            logger.error(f"[UPSTREAM] Token request ({grant_type}) failed: {type(e).__name__}")
            raise UpstreamUnavailable("identity provider unreachable") from None

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"[UPSTREAM] Token request ({grant_type}) -> {response.status_code} in {elapsed_ms}ms")

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code != 200:
            upstream_error = body.get("error") if isinstance(body, dict) else None
            if response.status_code == 400 and upstream_error == "invalid_grant":
                raise InvalidGrant("upstream grant is invalid or expired")
            logger.warning(f"[UPSTREAM] Token endpoint error: status={response.status_code} error={upstream_error}")
            if response.status_code >= 500:
                raise UpstreamUnavailable("identity provider error")
            raise UpstreamError("identity provider rejected the token request")

        if not isinstance(body, dict):
            raise UpstreamError("identity provider returned a malformed token response")
        try:
            return UpstreamToken.model_validate(body)
        except ValidationError:
            raise UpstreamError("identity provider returned a malformed token response") from None


def client_error_code(upstream_error: Optional[str]) -> str:
    """Map an upstream callback error to what the client is told."""
    if upstream_error in PASSTHROUGH_ERRORS:
        return upstream_error
    return "server_error"
