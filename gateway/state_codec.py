"""Encrypted state blobs carried through the upstream redirect.

A blob is base64url(IV || AES-256-GCM(ciphertext || tag)) of a canonical JSON
envelope {v, iat, nonce, purpose, req}. The deployment IV configured for the
gateway and the blob purpose are bound in as associated data; each blob gets
its own random 128-bit IV. There is no hidden state: the same key material
decodes blobs produced by any gateway process.
"""

import base64
import binascii
import json
import secrets
import time
from typing import Callable, NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ValidationError

from gateway.errors import StateExpired, StateMalformed, StateTampered
from gateway.models import AuthorizationRequest

ENVELOPE_VERSION = 1
IV_BYTES = 16
TAG_BYTES = 16
DEFAULT_TTL_SECONDS = 600
# Tolerated clock skew between gateway instances
MAX_CLOCK_SKEW_SECONDS = 60

PURPOSE_STATE = "state"
PURPOSE_CONSENT = "consent"
PURPOSE_UPSTREAM = "upstream"


class StateEnvelope(NamedTuple):
    request: AuthorizationRequest
    nonce: str
    issued_at: int


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError):
        raise StateMalformed("state is not valid base64url") from None


class StateCodec:
    """Pure encode/decode unit for state blobs and sealed values."""

    def __init__(
        self,
        key: bytes,
        deployment_iv: bytes,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if len(key) != 32:
            raise ValueError("state key must be 32 bytes")
        if len(deployment_iv) != IV_BYTES:
            raise ValueError("deployment IV must be 16 bytes")
        self._aead = AESGCM(key)
        self._deployment_iv = deployment_iv
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @classmethod
    def from_config(cls, config) -> "StateCodec":
        return cls(config.state_key, config.state_iv, ttl_seconds=config.state_ttl_seconds)

    def _aad(self, purpose: str) -> bytes:
        return self._deployment_iv + purpose.encode("utf-8")

    # ============== Raw sealing ==============

    def seal(self, data: bytes, purpose: str) -> str:
        iv = secrets.token_bytes(IV_BYTES)
        ciphertext = self._aead.encrypt(iv, data, self._aad(purpose))
        return _b64encode(iv + ciphertext)

    def unseal(self, blob: str, purpose: str) -> bytes:
        if not isinstance(blob, str) or not blob:
            raise StateMalformed("state is empty")
        raw = _b64decode(blob)
        if len(raw) <= IV_BYTES + TAG_BYTES:
            raise StateMalformed("state is too short")
        iv, ciphertext = raw[:IV_BYTES], raw[IV_BYTES:]
        try:
            return self._aead.decrypt(iv, ciphertext, self._aad(purpose))
        except InvalidTag:
            raise StateTampered("state failed authentication") from None

    # ============== Authorization requests ==============

    def encode(self, req: AuthorizationRequest, purpose: str = PURPOSE_STATE) -> str:
        envelope = {
            "v": ENVELOPE_VERSION,
            "iat": int(self._clock()),
            "nonce": secrets.token_urlsafe(16),
            "purpose": purpose,
            "req": req.model_dump(),
        }
        payload = json.dumps(envelope, sort_keys=True, separators=(",", ":"))
        return self.seal(payload.encode("utf-8"), purpose)

    def decode_envelope(self, blob: str, purpose: str = PURPOSE_STATE) -> StateEnvelope:
        plaintext = self.unseal(blob, purpose)
        try:
            envelope = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise StateMalformed("state payload is not JSON") from None
        if not isinstance(envelope, dict) or envelope.get("v") != ENVELOPE_VERSION:
            raise StateMalformed("unknown state envelope version")
        if envelope.get("purpose") != purpose:
            raise StateMalformed("state purpose mismatch")

        issued_at = envelope.get("iat")
        nonce = envelope.get("nonce")
        if not isinstance(issued_at, int) or not isinstance(nonce, str):
            raise StateMalformed("state envelope missing iat or nonce")
        try:
            request = AuthorizationRequest.model_validate(envelope.get("req"))
        except ValidationError:
            raise StateMalformed("state request failed validation") from None

        now = self._clock()
        if issued_at > now + MAX_CLOCK_SKEW_SECONDS:
            raise StateMalformed("state issued in the future")
        if issued_at + self.ttl_seconds < now:
            raise StateExpired("state expired")
        return StateEnvelope(request, nonce, issued_at)

    def decode(self, blob: str, purpose: str = PURPOSE_STATE) -> AuthorizationRequest:
        return self.decode_envelope(blob, purpose).request
