"""Token service for persisting and refreshing Google OAuth credentials.

WHAT:
    Stores encrypted Google token bundles per (user, company) and hands out
    a valid access token, refreshing it through the OAuth token endpoint when
    it is expired or inside the 5-minute buffer.

WHY:
    - Keeps encryption and refresh logic out of routers.
    - The common path (token still valid) makes no network call.
    - Refresh failures are terminal here; retries happen one level up in
      services/backoff.py.

REFERENCES:
    - metricus/security.py (encrypt_secret / decrypt_secret)
    - https://developers.google.com/identity/protocols/oauth2/web-server#offline
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from metricus.deps import Settings
from metricus.models import GoogleToken, utcnow
from metricus.security import encrypt_secret, decrypt_secret
from metricus.utils.customer_ids import sanitize_customer_id

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
REFRESH_BUFFER = timedelta(minutes=5)


class TokenNotFoundError(Exception):
    """No stored Google token for the requested user/company."""


class TokenRefreshError(Exception):
    """The identity provider rejected a refresh-token grant.

    Carries the provider's status and response body. `status_code` lets the
    backoff executor retry provider 5xx while treating 4xx as permanent.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def get_token_record(db: Session, user_id: str, company_id: Optional[str] = None) -> Optional[GoogleToken]:
    """Return the token row for (user, company), newest first when company is unspecified."""
    query = db.query(GoogleToken).filter(GoogleToken.user_id == user_id)
    if company_id is not None:
        query = query.filter(GoogleToken.company_id == company_id)
    return query.order_by(GoogleToken.updated_at.desc()).first()


def store_google_token(
    db: Session,
    user_id: str,
    *,
    company_id: Optional[str] = None,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    expires_at: datetime,
    scope: Optional[str] = None,
    customer_id: Optional[str] = None,
    login_customer_id: Optional[str] = None,
) -> GoogleToken:
    """Encrypt and upsert the token bundle for (user, company).

    WHAT:
        Creates or overwrites the `GoogleToken` row in place.
    WHY:
        Google omits refresh_token on repeat consents; an existing refresh
        token is kept when none is supplied.

    Raises:
        ValueError: When creating a new row without a refresh token.
    """
    label = f"google:{user_id}"
    token = (
        db.query(GoogleToken)
        .filter(GoogleToken.user_id == user_id, GoogleToken.company_id == company_id)
        .first()
    )

    encrypted_access = encrypt_secret(access_token, context=f"{label}:access") if access_token else None
    encrypted_refresh = encrypt_secret(refresh_token, context=f"{label}:refresh") if refresh_token else None

    if token:
        token.access_token_enc = encrypted_access
        if encrypted_refresh:
            token.refresh_token_enc = encrypted_refresh
        token.token_expiry = expires_at
        token.scope = scope or token.scope
        if customer_id is not None:
            token.customer_id = sanitize_customer_id(customer_id) or None
        if login_customer_id is not None:
            token.login_customer_id = sanitize_customer_id(login_customer_id) or None
        logger.info("[TOKEN_SERVICE] Updated encrypted token for %s", label)
    else:
        if not encrypted_refresh:
            raise ValueError("A refresh token is required to store a new Google connection.")
        token = GoogleToken(
            user_id=user_id,
            company_id=company_id,
            access_token_enc=encrypted_access,
            refresh_token_enc=encrypted_refresh,
            token_expiry=expires_at,
            scope=scope,
            customer_id=sanitize_customer_id(customer_id) or None,
            login_customer_id=sanitize_customer_id(login_customer_id) or None,
        )
        db.add(token)
        logger.info("[TOKEN_SERVICE] Created encrypted token for %s", label)

    db.commit()
    return token


def needs_refresh(token: GoogleToken, now: datetime) -> bool:
    """True when the access token is missing, expired, or expires within the buffer."""
    if not token.access_token_enc or token.token_expiry is None:
        return True
    return token.token_expiry <= now + REFRESH_BUFFER


async def refresh_access_token(
    db: Session,
    http: httpx.AsyncClient,
    settings: Settings,
    token: GoogleToken,
    *,
    now: Optional[datetime] = None,
) -> str:
    """Exchange the stored refresh token for a new access token and persist it.

    Raises:
        TokenRefreshError: On a non-2xx response from the token endpoint.
    """
    now = now or utcnow()
    label = f"google:{token.user_id}"
    refresh_token = decrypt_secret(token.refresh_token_enc, context=f"{label}:refresh")

    response = await http.post(
        GOOGLE_TOKEN_URL,
        data={
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": settings.GOOGLE_OAUTH_CLIENT_ID,
            "client_secret": settings.GOOGLE_OAUTH_CLIENT_SECRET,
        },
    )
    if not response.is_success:
        logger.error("[TOKEN_SERVICE] Refresh failed for %s (status=%s)", label, response.status_code)
        raise TokenRefreshError(
            f"Token refresh failed with status {response.status_code}",
            status_code=response.status_code,
            body=response.text,
        )

    payload = response.json()
    access_token = payload["access_token"]
    expires_in = int(payload.get("expires_in", 3600))

    token.access_token_enc = encrypt_secret(access_token, context=f"{label}:access")
    token.token_expiry = now + timedelta(seconds=expires_in)
    if payload.get("refresh_token"):
        token.refresh_token_enc = encrypt_secret(payload["refresh_token"], context=f"{label}:refresh")
    db.commit()

    logger.info("[TOKEN_SERVICE] Refreshed access token for %s (expires_in=%ds)", label, expires_in)
    return access_token


async def get_valid_access_token(
    db: Session,
    http: httpx.AsyncClient,
    settings: Settings,
    user_id: str,
    company_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> str:
    """Return a usable access token for (user, company).

    WHAT:
        Returns the stored token when it expires more than 5 minutes from
        `now`; otherwise performs a refresh-token grant and persists the result.

    Raises:
        TokenNotFoundError: No token row exists.
        TokenRefreshError: The identity provider rejected the refresh.
    """
    token = get_token_record(db, user_id, company_id)
    if token is None:
        raise TokenNotFoundError(f"No Google token stored for user {user_id}")

    now = now or utcnow()
    if not needs_refresh(token, now):
        return decrypt_secret(token.access_token_enc, context=f"google:{user_id}:access")

    return await refresh_access_token(db, http, settings, token, now=now)
