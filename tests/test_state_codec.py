import base64

import pytest

from gateway.errors import StateExpired, StateMalformed, StateTampered
from gateway.models import AuthorizationRequest
from gateway.state_codec import PURPOSE_CONSENT, PURPOSE_STATE, StateCodec

KEY = bytes(range(32))
DEPLOYMENT_IV = bytes(range(16))


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _request(**overrides) -> AuthorizationRequest:
    data = dict(
        client_id="cid123",
        redirect_uri="https://app.example/cb",
        scope="openid profile",
        state="xyz",
        code_challenge="E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
        resource="https://api.example",
        upstream_code_verifier="v" * 64,
    )
    data.update(overrides)
    return AuthorizationRequest(**data)


def _decode_raw(blob: str) -> bytes:
    return base64.urlsafe_b64decode(blob + "=" * (-len(blob) % 4))


def _encode_raw(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    return StateCodec(KEY, DEPLOYMENT_IV, ttl_seconds=600, clock=clock)


@pytest.mark.parametrize(
    "req",
    [
        _request(),
        _request(state=None, resource=None, upstream_code_verifier=None),
        _request(scope="", state="ünïcode & spaces=ok"),
    ],
)
def test_decode_recovers_encoded_request(codec, req):
    assert codec.decode(codec.encode(req)) == req


def test_blobs_are_url_safe_and_unique(codec):
    req = _request()
    first, second = codec.encode(req), codec.encode(req)
    assert first != second
    assert all(c.isalnum() or c in "-_" for c in first)


def test_every_bit_flip_is_rejected_as_tampered(codec):
    raw = _decode_raw(codec.encode(_request()))
    for index in range(len(raw)):
        for bit in range(8):
            flipped = bytearray(raw)
            flipped[index] ^= 1 << bit
            with pytest.raises(StateTampered):
                codec.decode(_encode_raw(bytes(flipped)))


def test_blob_from_another_deployment_is_tampered(clock):
    other = StateCodec(bytes(32), DEPLOYMENT_IV, clock=clock)
    blob = other.encode(_request())
    with pytest.raises(StateTampered):
        StateCodec(KEY, DEPLOYMENT_IV, clock=clock).decode(blob)


def test_deployment_iv_is_bound_to_blob(clock):
    blob = StateCodec(KEY, bytes(16), clock=clock).encode(_request())
    with pytest.raises(StateTampered):
        StateCodec(KEY, DEPLOYMENT_IV, clock=clock).decode(blob)


def test_purpose_is_bound_to_blob(codec):
    blob = codec.encode(_request(), PURPOSE_CONSENT)
    with pytest.raises(StateTampered):
        codec.decode(blob, PURPOSE_STATE)


@pytest.mark.parametrize("blob", ["", "!!!not-base64!!!", "abc", _encode_raw(b"x" * 32)])
def test_malformed_blobs(codec, blob):
    with pytest.raises(StateMalformed):
        codec.decode(blob)


def test_sealed_non_json_is_malformed(codec):
    with pytest.raises(StateMalformed):
        codec.decode(codec.seal(b"not json", PURPOSE_STATE))


def test_sealed_wrong_shape_is_malformed(codec):
    blob = codec.seal(b'{"v": 1, "iat": 1, "nonce": "n", "purpose": "state", "req": {"client_id": "x"}}', PURPOSE_STATE)
    with pytest.raises(StateMalformed):
        codec.decode(blob)


def test_expired_state(codec, clock):
    blob = codec.encode(_request())
    clock.now += 601
    with pytest.raises(StateExpired):
        codec.decode(blob)


def test_state_within_ttl(codec, clock):
    blob = codec.encode(_request())
    clock.now += 599
    assert codec.decode(blob).client_id == "cid123"


def test_decode_survives_new_codec_instance(clock):
    blob = StateCodec(KEY, DEPLOYMENT_IV, clock=clock).encode(_request())
    assert StateCodec(KEY, DEPLOYMENT_IV, clock=clock).decode(blob) == _request()


def test_envelope_exposes_nonce(codec):
    envelope = codec.decode_envelope(codec.encode(_request()))
    assert envelope.nonce
    assert envelope.issued_at == int(codec._clock())
