"""Shared fixtures: a gateway app wired to an in-memory store and a mocked IdP."""

import base64
import re
import json
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient

from config import GatewayConfig
from gateway.stores import MemoryStore
from gateway.upstream import StaticAssertionAuthenticator
from main import create_app

BASE_URL = "https://gateway.example"
TENANT_ID = "tenant-0000"
APPLICATION_ID = "app-1111"
TEST_ASSERTION = "static-test-assertion"


def b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def make_config(**overrides) -> GatewayConfig:
    data = {
        "base_url": BASE_URL,
        "state_key": b64(bytes(range(32))),
        "state_iv": b64(bytes(range(100, 116))),
        "tenant_id": TENANT_ID,
        "application_id": APPLICATION_ID,
        "managed_identity_client_id": "mi-2222",
        "scopes": "openid profile email offline_access",
        "upstream_scopes": f"api://{APPLICATION_ID}/.default openid offline_access",
    }
    data.update(overrides)
    return GatewayConfig(data)


class FakeIdP:
    """Records upstream token requests and answers them."""

    def __init__(self):
        self.requests: list[dict] = []
        self.status_code = 200
        self.body = None
        self.raise_timeout = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.raise_timeout:
            raise httpx.ReadTimeout("upstream timed out", request=request)
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append({"url": str(request.url), "form": form})
        if self.body is not None:
            return httpx.Response(self.status_code, json=self.body)
        return httpx.Response(
            self.status_code,
            json={
                "access_token": f"upstream-access-{len(self.requests)}",
                "refresh_token": f"upstream-refresh-{len(self.requests)}",
                "id_token": "upstream-id-token",
                "token_type": "Bearer",
                "expires_in": 3600,
                "scope": "openid offline_access",
            },
        )


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def idp():
    return FakeIdP()


@pytest.fixture
def app(config, store, idp):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(idp.handler))
    return create_app(
        config,
        store=store,
        authenticator=StaticAssertionAuthenticator(TEST_ASSERTION),
        http_client=http_client,
    )


@pytest.fixture
def client(app):
    with TestClient(app, base_url="https://testserver", follow_redirects=False) as test_client:
        yield test_client


@pytest.fixture
def gateway(app):
    return app.state.gateway


def query_of(location: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(location).query).items()}


def path_of(location: str) -> str:
    parts = urlsplit(location)
    return f"{parts.path}?{parts.query}" if parts.query else parts.path


def register_client(client, redirect_uris=None, **metadata) -> dict:
    body = {"redirect_uris": redirect_uris or ["https://app.example/cb"], "client_name": "Example App"}
    body.update(metadata)
    response = client.post("/register", content=json.dumps(body), headers={"Content-Type": "application/json"})
    assert response.status_code == 201, response.text
    return response.json()


# RFC 7636 appendix B
VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def authorize_params(client_id: str, **overrides) -> dict:
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": "https://app.example/cb",
        "code_challenge": CHALLENGE,
        "code_challenge_method": "S256",
        "state": "xyz",
        "scope": "openid profile",
    }
    params.update(overrides)
    return {k: v for k, v in params.items() if v is not None}


def form_field(html: str, name: str) -> str:
    match = re.search(rf'name="{name}" value="([^"]*)"', html)
    assert match, f"field {name} not in page"
    return match.group(1)


def submit_consent(client, consent_location: str, action: str = "approve", scopes=None):
    """Load the consent page and submit it; returns the POST response."""
    page = client.get(path_of(consent_location))
    assert page.status_code == 200, page.text
    data = {
        "request": form_field(page.text, "request"),
        "csrf_token": form_field(page.text, "csrf_token"),
        "action": action,
    }
    if scopes is not None:
        data["scopes_presented"] = "1"
        data["scope"] = scopes
    return client.post("/consent", data=data)


def run_to_callback(client, client_id: str, upstream_code: str = "UPSTREAM1", **overrides):
    """Drive authorize -> consent -> simulated upstream redirect; returns the callback response."""
    response = client.get("/authorize", params=authorize_params(client_id, **overrides))
    assert response.status_code == 302, response.text
    location = response.headers["location"]
    if "/consent?" in location:
        response = submit_consent(client, location)
        assert response.status_code == 302, response.text
        location = response.headers["location"]
    state_blob = query_of(location)["state"]
    return client.get("/oauth-callback", params={"code": upstream_code, "state": state_blob})
