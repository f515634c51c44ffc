"""Google Ads OAuth 2.0 flow endpoints.

WHAT:
    Implements the authorization-code flow that creates the stored Google
    token bundle for a user (and optionally a company).

WHY:
    Every Google Ads call depends on a refresh token obtained here with
    offline access and forced consent.

REFERENCES:
    - https://developers.google.com/google-ads/api/docs/oauth/overview
    - metricus/services/token_service.py (store_google_token)
"""

import logging
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_current_user_id, get_http_client, require_configured
from ..models import utcnow
from ..security import sign_oauth_state, verify_oauth_state
from ..services.token_service import GOOGLE_TOKEN_URL, store_google_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/google", tags=["Google OAuth"])

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_SCOPES = ["https://www.googleapis.com/auth/adwords"]


def _frontend_redirect(settings: Settings, outcome: str, message: Optional[str] = None) -> RedirectResponse:
    params = {"google_oauth": outcome}
    if message:
        params["message"] = message
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/settings?{urlencode(params)}")


@router.get("/authorize")
def google_authorize(
    company_id: Optional[str] = Query(default=None),
    customer_id: Optional[str] = Query(default=None, description="Advertiser account being connected"),
    login_customer_id: Optional[str] = Query(default=None, description="Manager account to try first"),
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(require_configured),
):
    """
    Build the Google OAuth consent URL for the caller.

    WHAT:
        Returns `{url}` rather than redirecting, because the SPA calls this
        with a bearer header and then navigates itself.
    WHY:
        The signed `state` carries who is connecting through Google's redirect.
    """
    state = sign_oauth_state(
        user_id,
        company_id,
        settings.SUPABASE_JWT_SECRET,
        customer_id=customer_id,
        login_customer_id=login_customer_id,
    )
    params = {
        "client_id": settings.GOOGLE_OAUTH_CLIENT_ID,
        "redirect_uri": settings.GOOGLE_OAUTH_REDIRECT_URI,
        "response_type": "code",
        "scope": " ".join(GOOGLE_SCOPES),
        "access_type": "offline",  # Request refresh token
        "prompt": "consent",  # Force consent screen to ensure refresh token
        "include_granted_scopes": "true",
        "state": state,
    }
    logger.info("[GOOGLE_OAUTH] Built consent URL for user %s", user_id)
    return {"url": f"{GOOGLE_AUTH_URL}?{urlencode(params)}"}


@router.get("/callback")
async def google_callback(
    code: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    settings: Settings = Depends(require_configured),
    db: Session = Depends(get_db),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """
    Handle OAuth callback from Google.

    WHAT:
        Verifies the state, exchanges the code for tokens and upserts the
        token bundle, then redirects back to the frontend settings page.
    """
    # Handle errors from Google
    if error:
        logger.error("[GOOGLE_OAUTH] OAuth error: %s", error)
        return _frontend_redirect(settings, "error", error)

    if not code:
        logger.error("[GOOGLE_OAUTH] Missing authorization code")
        return _frontend_redirect(settings, "error", "missing_code")

    try:
        claims = verify_oauth_state(state or "", settings.SUPABASE_JWT_SECRET)
    except ValueError as exc:
        logger.error("[GOOGLE_OAUTH] %s", exc)
        return _frontend_redirect(settings, "error", "invalid_state")

    try:
        response = await http.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": settings.GOOGLE_OAUTH_CLIENT_ID,
                "client_secret": settings.GOOGLE_OAUTH_CLIENT_SECRET,
                "redirect_uri": settings.GOOGLE_OAUTH_REDIRECT_URI,
                "grant_type": "authorization_code",
            },
        )
    except httpx.HTTPError as exc:
        logger.error("[GOOGLE_OAUTH] Token exchange request failed: %s", type(exc).__name__)
        return _frontend_redirect(settings, "error", "token_exchange_failed")

    if not response.is_success:
        logger.error("[GOOGLE_OAUTH] Token exchange failed (status=%s)", response.status_code)
        return _frontend_redirect(settings, "error", "token_exchange_failed")

    tokens = response.json()
    now = utcnow()
    try:
        store_google_token(
            db,
            claims["sub"],
            company_id=claims.get("company_id"),
            access_token=tokens.get("access_token"),
            refresh_token=tokens.get("refresh_token"),
            expires_at=now + timedelta(seconds=int(tokens.get("expires_in", 3600))),
            scope=tokens.get("scope"),
            customer_id=claims.get("customer_id"),
            login_customer_id=claims.get("login_customer_id"),
        )
    except ValueError as exc:
        # Google only returns a refresh token on first consent
        logger.error("[GOOGLE_OAUTH] Could not store token: %s", exc)
        return _frontend_redirect(settings, "error", "missing_refresh_token")

    logger.info("[GOOGLE_OAUTH] Connected Google Ads for user %s", claims["sub"])
    return _frontend_redirect(settings, "success")
