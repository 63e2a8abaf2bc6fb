"""JWT utilities for the browser principal cookie.

The consent step happens before the user signs in upstream, so consent is
recorded against a stable, signed browser identifier rather than an IdP
account. The cookie is a PyJWT HS256 token signed with a key derived from
the deployment state key, so it stays valid across restarts.
"""

import logging
import time
import uuid
from typing import Optional

import jwt
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
PRINCIPAL_COOKIE_NAME = "gw_principal"
PRINCIPAL_EXPIRE_SECONDS = 365 * 24 * 60 * 60  # 1 year


def derive_signing_key(state_key: bytes) -> bytes:
    """Derive the cookie signing key from the state encryption key."""
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"oauth-gateway browser principal",
    ).derive(state_key)


def create_principal_token(
    signing_key: bytes,
    issuer: str,
    principal: Optional[str] = None,
    expires_in: int = PRINCIPAL_EXPIRE_SECONDS,
) -> str:
    """Create a signed browser principal token.

    Args:
        signing_key: Key from derive_signing_key()
        issuer: The gateway base URL
        principal: Existing principal to re-sign; a new one is minted if None
        expires_in: Token lifetime in seconds

    Returns:
        A signed JWT string
    """
    now = int(time.time())
    payload = {
        "sub": principal or f"browser:{uuid.uuid4().hex}",
        "iss": issuer,
        "iat": now,
        "exp": now + expires_in,
        "type": "principal",
    }
    return jwt.encode(payload, signing_key, algorithm=JWT_ALGORITHM)


def verify_principal_token(token: str, signing_key: bytes, issuer: str) -> Optional[str]:
    """Verify a browser principal token and return its subject, or None."""
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            signing_key,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp", "sub"]},
            issuer=issuer,
        )
    except jwt.ExpiredSignatureError:
        logger.debug("[JWT] Principal token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.debug(f"[JWT] Invalid principal token ({e})")
        return None

    if payload.get("type") != "principal":
        logger.debug("[JWT] Token is not a principal token")
        return None
    return payload["sub"]


def unverified_expiry(token: str) -> Optional[int]:
    """Read the `exp` claim of a JWT issued by someone else, without verifying it."""
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    exp = payload.get("exp")
    return int(exp) if isinstance(exp, (int, float)) else None
