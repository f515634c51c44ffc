"""Google Ads diagnostic endpoints for the internal operator UI.

WHAT:
    Configuration selftest, connectivity pings, MCC lookups and single
    hierarchy probes. Responses carry human-readable errors and masked ids.

WHY:
    Most Google Ads failures are configuration, consent or manager-header
    problems; these endpoints answer "which one?" without reading logs.

REFERENCES:
    - metricus/services/mcc_resolver.py
    - metricus/services/google_ads_client.py
"""

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Header, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import get_db, get_db_if_configured
from ..deps import (
    ConfigurationError,
    Settings,
    get_current_user_id,
    get_http_client,
    get_principal,
    get_settings,
    require_configured,
)
from ..schemas import PingSearchRequest
from ..services.google_ads_client import GoogleAdsApiError, GoogleAdsRestClient
from ..services.mcc_resolver import ManagedBy, MccResolver, NoTokenError, NotManaged
from ..services.token_service import TokenNotFoundError, TokenRefreshError, get_token_record, get_valid_access_token
from ..utils.customer_ids import mask_customer_id, redact_customer_ids, sanitize_customer_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/diag", tags=["Diagnostics"])

PING_SEARCH_QUERY = "SELECT customer.id FROM customer LIMIT 1"


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message, **extra})


def _ads_client(http: httpx.AsyncClient, settings: Settings, access_token: str) -> GoogleAdsRestClient:
    return GoogleAdsRestClient(
        http,
        developer_token=settings.GOOGLE_ADS_DEVELOPER_TOKEN,
        access_token=access_token,
        api_version=settings.GOOGLE_ADS_API_VERSION,
    )


@router.get("/ping")
async def ping(
    selftest: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
    authorization: Optional[str] = Header(default=None),
    db: Optional[Session] = Depends(get_db_if_configured),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """
    Configuration selftest or token/API connectivity check.

    WHAT:
        - `?selftest=1`: which required variables are set (booleans only).
          Answers even when configuration is incomplete and needs no auth.
        - otherwise: refreshes the caller's token and lists accessible customers.
    """
    if selftest == "1":
        report = settings.config_report()
        logger.info("[DIAG] Selftest: %d/%d required variables set", sum(report.values()), len(report))
        return {"ok": all(report.values()), "mode": "selftest", "env": report}

    require_configured(settings)
    if db is None:
        raise ConfigurationError(settings.missing_required(), settings.config_report())
    principal = get_principal(settings=settings, authorization=authorization, x_api_key=None)
    user_id = get_current_user_id(principal)

    try:
        access_token = await get_valid_access_token(db, http, settings, user_id)
        customer_ids = await _ads_client(http, settings, access_token).list_accessible_customers()
    except (TokenNotFoundError, TokenRefreshError, GoogleAdsApiError, httpx.HTTPError) as exc:
        logger.warning("[DIAG] Ping failed: %s", redact_customer_ids(exc))
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    return {
        "ok": True,
        "customers_count": len(customer_ids),
        "customers": [mask_customer_id(cid) for cid in customer_ids],
    }


@router.get("/mcc-for/{customer_id}")
async def mcc_for(
    customer_id: str,
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(require_configured),
    db: Session = Depends(get_db),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """Resolve the managing MCC for one account and return it masked."""
    target = sanitize_customer_id(customer_id)
    if not target:
        return _error(status.HTTP_400_BAD_REQUEST, "customerId must contain digits")

    resolver = MccResolver(db, http, settings)
    try:
        resolution = await resolver.resolve_manager_for(user_id, target)
    except NoTokenError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc), errorCode="NO_TOKEN")
    except (TokenRefreshError, httpx.HTTPError) as exc:
        return _error(status.HTTP_502_BAD_GATEWAY, f"Token refresh failed: {exc}")

    if isinstance(resolution, ManagedBy):
        return {
            "ok": True,
            "customerId": mask_customer_id(target),
            "loginCustomerId": mask_customer_id(resolution.login_customer_id),
            "cached": resolution.cached,
        }
    if isinstance(resolution, NotManaged):
        return _error(
            status.HTTP_404_NOT_FOUND,
            f"No manager account manages {mask_customer_id(target)}",
            errorCode="NO_MANAGING_MCC",
            cached=resolution.cached,
        )
    raise TypeError(f"Unhandled resolution: {resolution!r}")


@router.post("/ping-search")
async def ping_search(
    payload: PingSearchRequest,
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(require_configured),
    db: Session = Depends(get_db),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """
    Minimal GAQL query against one account to confirm connectivity.

    Uses the given loginCustomerId, or the resolved MCC when omitted.
    """
    target = sanitize_customer_id(payload.customerId)
    if not target:
        return _error(status.HTTP_400_BAD_REQUEST, "customerId must contain digits")

    try:
        login_customer_id = sanitize_customer_id(payload.loginCustomerId) or None
        if login_customer_id is None:
            resolution = await MccResolver(db, http, settings).resolve_manager_for(user_id, target)
            if isinstance(resolution, ManagedBy):
                login_customer_id = resolution.login_customer_id

        access_token = await get_valid_access_token(db, http, settings, user_id)
        rows = await _ads_client(http, settings, access_token).search(
            target, PING_SEARCH_QUERY, login_customer_id=login_customer_id
        )
    except (NoTokenError, TokenNotFoundError) as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc), errorCode="NO_TOKEN")
    except GoogleAdsApiError as exc:
        logger.warning("[DIAG] ping-search failed for %s: %s", mask_customer_id(target), redact_customer_ids(exc))
        return _error(status.HTTP_400_BAD_REQUEST, str(exc), status=exc.status_code, details=exc.body)
    except (TokenRefreshError, httpx.HTTPError) as exc:
        return _error(status.HTTP_502_BAD_GATEWAY, str(exc))

    return {
        "ok": True,
        "customerId": mask_customer_id(target),
        "loginCustomerId": mask_customer_id(login_customer_id) if login_customer_id else None,
        "rows": len(rows),
    }


@router.get("/context")
def context(
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(require_configured),
    db: Session = Depends(get_db),
):
    """What the backend knows about the caller's Google Ads setup."""
    token = get_token_record(db, user_id)
    candidates = MccResolver(db, None, settings).candidate_managers(user_id)
    return {
        "hasBearer": True,
        "hasDevToken": bool(settings.GOOGLE_ADS_DEVELOPER_TOKEN),
        "hasToken": token is not None,
        "loginCustomerIdSaved": bool(token and token.login_customer_id),
        "mccCandidatesCount": len(candidates),
    }


@router.get("/hierarchy-check")
async def hierarchy_check(
    mcc: str = Query(..., min_length=1),
    child: str = Query(..., min_length=1),
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(require_configured),
    db: Session = Depends(get_db),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """Run a single manager probe: does `mcc` manage `child`?"""
    manager_id = sanitize_customer_id(mcc)
    child_id = sanitize_customer_id(child)
    if not manager_id or not child_id:
        return _error(status.HTTP_400_BAD_REQUEST, "mcc and child must contain digits")

    try:
        access_token = await get_valid_access_token(db, http, settings, user_id)
    except TokenNotFoundError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc), errorCode="NO_TOKEN")
    except (TokenRefreshError, httpx.HTTPError) as exc:
        return _error(status.HTTP_502_BAD_GATEWAY, str(exc))

    # One attempt, no backoff sleeps inside the request
    resolver = MccResolver(db, http, settings, max_retries=0)
    managed = await resolver.probe(_ads_client(http, settings, access_token), manager_id, child_id)
    if managed is None:
        return _error(status.HTTP_502_BAD_GATEWAY, "Google Ads did not answer the hierarchy query", mcc=mask_customer_id(manager_id))
    return {
        "ok": True,
        "managed": managed,
        "mcc": mask_customer_id(manager_id),
        "child": mask_customer_id(child_id),
    }
