"""Google Ads account directory and MCC resolution endpoints.

WHAT:
    - POST /accounts/sync: refresh `accounts_map` from listAccessibleCustomers
    - POST /resolve-mcc: resolve the managing MCC for one account

REFERENCES:
    - metricus/services/account_directory.py
    - metricus/services/mcc_resolver.py
"""

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_current_user_id, get_http_client, require_configured
from ..schemas import ResolveMccRequest
from ..services.account_directory import sync_accessible_accounts
from ..services.google_ads_client import GoogleAdsApiError
from ..services.mcc_resolver import ManagedBy, MccResolver, NoTokenError, NotManaged
from ..services.token_service import TokenNotFoundError, TokenRefreshError
from ..utils.customer_ids import mask_customer_id, redact_customer_ids, sanitize_customer_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Google Ads Accounts"])


@router.post("/accounts/sync")
async def sync_accounts(
    company_id: Optional[str] = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(require_configured),
    db: Session = Depends(get_db),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """
    Sync the caller's accessible Google Ads accounts into the directory.

    WHY:
        Managers found here become MCC candidates for resolution.
    """
    try:
        result = await sync_accessible_accounts(db, http, settings, user_id, company_id)
    except TokenNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except TokenRefreshError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Token refresh failed: {exc}")
    except GoogleAdsApiError as exc:
        logger.error("[ACCOUNTS] listAccessibleCustomers failed: %s", redact_customer_ids(exc))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))

    return result.to_dict()


@router.post("/resolve-mcc")
async def resolve_mcc(
    payload: ResolveMccRequest,
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(require_configured),
    db: Session = Depends(get_db),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """Resolve which of the caller's manager accounts manages `targetCustomerId`."""
    target = sanitize_customer_id(payload.targetCustomerId)
    if not target:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="targetCustomerId must contain digits")

    try:
        resolution = await MccResolver(db, http, settings).resolve_manager_for(user_id, target)
    except NoTokenError as exc:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": str(exc), "errorCode": "NO_TOKEN"},
        )
    except (TokenRefreshError, httpx.HTTPError) as exc:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"success": False, "error": f"Token refresh failed: {exc}"},
        )

    if isinstance(resolution, ManagedBy):
        return {
            "success": True,
            "resolvedLoginCustomerId": resolution.login_customer_id,
            "cached": resolution.cached,
        }
    if isinstance(resolution, NotManaged):
        logger.info("[ACCOUNTS] No managing MCC for %s", mask_customer_id(target))
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={
                "success": False,
                "error": "No manager account available to this user manages the target account",
                "errorCode": "NO_MANAGING_MCC",
                "cached": resolution.cached,
            },
        )
    raise TypeError(f"Unhandled resolution: {resolution!r}")
