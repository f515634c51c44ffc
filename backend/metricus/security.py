"""Security utilities for bearer JWTs, OAuth state and token encryption.

WHAT:
    Centralizes JWT verification for end-user bearer tokens, signing of the
    short-lived OAuth `state` parameter, and symmetric encryption of Google
    OAuth credentials before they are persisted.

WHY:
    - Bearer verification is shared by every user-facing route.
    - Token encryption keeps provider credentials out of plaintext storage.
    - Keys come from settings lazily so a missing variable is reported by the
      configuration check instead of crashing the process at import time.

REFERENCES:
    - metricus/deps.py (Settings, principal resolution)
    - metricus/services/token_service.py (consumes encrypt_secret / decrypt_secret)
"""

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from jose import jwt, JWTError


ALGORITHM = "HS256"
OAUTH_STATE_TTL_MINUTES = 10

logger = logging.getLogger(__name__)


@lru_cache()
def _cipher_for(key: str) -> Fernet:
    try:
        return Fernet(key)
    except (ValueError, TypeError) as exc:
        raise ValueError(
            "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
            "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        ) from exc


def _cipher() -> Fernet:
    from .deps import get_settings

    key = get_settings().TOKEN_ENCRYPTION_KEY
    if not key:
        raise ValueError("TOKEN_ENCRYPTION_KEY is not set.")
    return _cipher_for(key)


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt provider secrets before persisting.

    WHAT:
        Symmetric encryption wrapper around Fernet for storing Google tokens.
    WHY:
        Prevents raw tokens from landing in the database or logs.

    Args:
        plaintext: Raw secret to encrypt (access or refresh token).
        context:   Friendly label for logs (user/purpose, never the secret).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher().encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.debug("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt provider secrets when restoring tokens for API calls.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        return _cipher().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc


def decode_bearer(token: str, secret: str) -> Dict[str, Any]:
    """Decode and validate an end-user session JWT, returning its payload.

    Audience is not enforced: session tokens carry `aud=authenticated`.
    Raises jose.JWTError on failure.
    """
    return jwt.decode(token, secret, algorithms=[ALGORITHM], options={"verify_aud": False})


def create_bearer(subject: str, secret: str, expires_minutes: int = 60) -> str:
    """Create a signed session-style JWT for the given user id (scripts, tests)."""
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {"sub": subject, "iat": int(now.timestamp()), "exp": int(expire.timestamp())}
    return jwt.encode(to_encode, secret, algorithm=ALGORITHM)


def sign_oauth_state(
    user_id: str,
    company_id: Optional[str],
    secret: str,
    *,
    customer_id: Optional[str] = None,
    login_customer_id: Optional[str] = None,
) -> str:
    """Sign the OAuth `state` round-tripped through Google's consent screen."""
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": user_id,
        "company_id": company_id,
        "customer_id": customer_id,
        "login_customer_id": login_customer_id,
        "purpose": "google_oauth",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=OAUTH_STATE_TTL_MINUTES)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def verify_oauth_state(state: str, secret: str) -> Dict[str, Any]:
    """Verify a state produced by `sign_oauth_state`.

    Raises:
        ValueError: If the state is expired, tampered with, or not ours.
    """
    try:
        payload = jwt.decode(state, secret, algorithms=[ALGORITHM], options={"verify_aud": False})
    except JWTError as exc:
        raise ValueError("Invalid or expired OAuth state") from exc
    if payload.get("purpose") != "google_oauth" or not payload.get("sub"):
        raise ValueError("Invalid OAuth state payload")
    return payload
