"""Record types shared by the gateway components."""

import time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ClientRegistration(BaseModel):
    """A dynamically registered public client. Immutable once stored."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_name: str = "OAuth Client"
    redirect_uris: list[str]
    grant_types: list[str] = ["authorization_code", "refresh_token"]
    response_types: list[str] = ["code"]
    token_endpoint_auth_method: str = "none"
    created_at: int = Field(default_factory=lambda: int(time.time()))

    def allows_redirect(self, redirect_uri: str) -> bool:
        # Exact string match only
        return redirect_uri in self.redirect_uris


class AuthorizationRequest(BaseModel):
    """Authorize parameters carried through the upstream round trip."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    response_type: str = "code"
    client_id: str
    redirect_uri: str
    scope: str = ""
    state: Optional[str] = None
    code_challenge: str
    code_challenge_method: str = "S256"
    resource: Optional[str] = None
    upstream_code_verifier: Optional[str] = None

    @property
    def scopes(self) -> list[str]:
        return self.scope.split()


class ConsentDecision(BaseModel):
    client_id: str
    user_principal: str
    granted_scopes: list[str] = []
    decision: str  # "approved" | "denied"
    timestamp: int = Field(default_factory=lambda: int(time.time()))
    expires_at: int

    def covers(self, scopes: list[str], now: Optional[float] = None) -> bool:
        """True if this is an unexpired approval for every scope in `scopes`."""
        now = time.time() if now is None else now
        if self.decision != "approved" or now >= self.expires_at:
            return False
        return set(scopes) <= set(self.granted_scopes)


class PendingCode(BaseModel):
    """Mapping from a client-facing code to what is needed to redeem it.

    Keyed by the SHA-256 of the client code; `sealed_upstream` holds either
    the upstream code and verifier or the upstream tokens, sealed by the
    state codec.
    """

    code_hash: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    scope: str = ""
    resource: Optional[str] = None
    sealed_upstream: str
    exchange_mode: str = "lazy"
    created_at: int = Field(default_factory=lambda: int(time.time()))
    expires_at: int
    consumed_at: Optional[int] = None


class UpstreamToken(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None

    def to_response(self) -> dict:
        """Standard OAuth2 token response body."""
        return self.model_dump(exclude_none=True)


class FederatedCredentialBinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    managed_identity_client_id: Optional[str] = None
    target_application_id: str
    audience: str = "api://AzureADTokenExchange"
