import pytest

from conftest import (
    CHALLENGE,
    VERIFIER,
    authorize_params,
    make_config,
    query_of,
    register_client,
    run_to_callback,
    submit_consent,
)
from gateway.callback import hash_code
from gateway.state_codec import PURPOSE_STATE


@pytest.fixture
def client_id(client):
    return register_client(client)["client_id"]


def _upstream_state(client, client_id, **overrides) -> str:
    response = client.get("/authorize", params=authorize_params(client_id, **overrides))
    location = response.headers["location"]
    if "/consent?" in location:
        location = submit_consent(client, location).headers["location"]
    return query_of(location)["state"]


def test_callback_returns_code_and_original_state(client, client_id, store, idp):
    response = run_to_callback(client, client_id)
    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith("https://app.example/cb?")

    query = query_of(location)
    assert query["state"] == "xyz"
    pending = store.get_pending_code(hash_code(query["code"]))
    assert pending.client_id == client_id
    assert pending.code_challenge == CHALLENGE
    assert pending.exchange_mode == "lazy"
    # lazy mode talks to the IdP only at /token
    assert idp.requests == []


def test_callback_without_client_state(client, client_id):
    response = run_to_callback(client, client_id, state=None)
    query = query_of(response.headers["location"])
    assert "state" not in query
    assert query["code"]


@pytest.mark.parametrize("state", ["", "not-a-state", "A" * 200])
def test_bad_state_shows_generic_page(client, state):
    response = client.get("/oauth-callback", params={"code": "UPSTREAM1", "state": state})
    assert response.status_code == 400
    assert "location" not in response.headers
    assert "Sign-in failed" in response.text


def test_tampered_state_leaks_nothing(client, client_id):
    state = _upstream_state(client, client_id)
    tampered = state[:20] + ("A" if state[20] != "A" else "B") + state[21:]
    response = client.get("/oauth-callback", params={"code": "UPSTREAM1", "state": tampered})
    assert response.status_code == 400
    assert tampered not in response.text
    assert "app.example" not in response.text
    assert "Tampered" not in response.text


def test_consent_blob_is_not_accepted_as_state(client, gateway, client_id):
    state = _upstream_state(client, client_id)
    req = gateway.codec.decode(state, PURPOSE_STATE)
    wrong_purpose = gateway.codec.encode(req, "consent")
    response = client.get("/oauth-callback", params={"code": "UPSTREAM1", "state": wrong_purpose})
    assert response.status_code == 400


def test_state_is_single_use(client, client_id):
    state = _upstream_state(client, client_id)
    first = client.get("/oauth-callback", params={"code": "UPSTREAM1", "state": state})
    assert first.status_code == 302
    second = client.get("/oauth-callback", params={"code": "UPSTREAM2", "state": state})
    assert second.status_code == 400
    assert "location" not in second.headers


@pytest.mark.parametrize(
    "upstream_error, expected",
    [
        ("access_denied", "access_denied"),
        ("interaction_required", "interaction_required"),
        ("invalid_client", "server_error"),
        ("something_odd", "server_error"),
    ],
)
def test_upstream_error_is_reported_to_client(client, client_id, upstream_error, expected):
    state = _upstream_state(client, client_id)
    response = client.get(
        "/oauth-callback",
        params={"error": upstream_error, "error_description": "AADSTS50000: internal detail", "state": state},
    )
    assert response.status_code == 302
    query = query_of(response.headers["location"])
    assert query["error"] == expected
    assert query["state"] == "xyz"
    assert "code" not in query
    assert "AADSTS" not in response.headers["location"]


def test_missing_code_and_error(client, client_id):
    state = _upstream_state(client, client_id)
    response = client.get("/oauth-callback", params={"state": state})
    assert response.status_code == 400


def test_client_deleted_after_authorize(client, client_id, store):
    state = _upstream_state(client, client_id)
    del store.registered_clients[client_id]
    response = client.get("/oauth-callback", params={"code": "UPSTREAM1", "state": state})
    assert response.status_code == 400
    assert "location" not in response.headers


class TestEagerExchange:
    @pytest.fixture
    def config(self):
        return make_config(token_exchange_mode="eager")

    def test_callback_exchanges_immediately(self, client, client_id, store, idp):
        response = run_to_callback(client, client_id)
        assert response.status_code == 302
        assert len(idp.requests) == 1
        assert idp.requests[0]["form"]["code"] == "UPSTREAM1"

        code = query_of(response.headers["location"])["code"]
        pending = store.get_pending_code(hash_code(code))
        assert pending.exchange_mode == "eager"
        assert "upstream-access" not in pending.sealed_upstream

    def test_token_endpoint_returns_tokens_from_callback(self, client, client_id, idp):
        response = run_to_callback(client, client_id)
        code = query_of(response.headers["location"])["code"]
        data = {"grant_type": "authorization_code", "code": code, "code_verifier": VERIFIER, "client_id": client_id}

        redeemed = client.post("/token", data=data)
        assert redeemed.status_code == 200, redeemed.text
        assert redeemed.json()["access_token"] == "upstream-access-1"
        assert redeemed.json()["refresh_token"] == "upstream-refresh-1"
        assert len(idp.requests) == 1

        replayed = client.post("/token", data=data)
        assert replayed.status_code == 400
        assert replayed.json()["error"] == "invalid_grant"
        assert len(idp.requests) == 1

    def test_upstream_failure_redirects_with_error(self, client, client_id, idp):
        idp.status_code = 400
        idp.body = {"error": "invalid_grant"}
        response = run_to_callback(client, client_id)
        query = query_of(response.headers["location"])
        assert query["error"] == "server_error"
        assert "code" not in query

    def test_upstream_timeout_redirects_temporarily_unavailable(self, client, client_id, idp):
        idp.raise_timeout = True
        response = run_to_callback(client, client_id)
        assert query_of(response.headers["location"])["error"] == "temporarily_unavailable"
