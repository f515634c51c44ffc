"""Accounts directory sync.

WHAT:
    Lists the Google Ads customers the user's OAuth grant can access and
    upserts them into `accounts_map`, typed manager or client.

WHY:
    Directory managers are MCC candidates for the resolver, and the
    dashboard links clients to advertiser accounts from this table.

REFERENCES:
    - metricus/services/mcc_resolver.py (consumes manager rows)
    - https://developers.google.com/google-ads/api/fields/v21/customer
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from metricus.deps import Settings
from metricus.models import AccountMap, AccountTypeEnum
from metricus.services.google_ads_client import GoogleAdsApiError, GoogleAdsRestClient
from metricus.services.token_service import get_valid_access_token
from metricus.utils.customer_ids import mask_customer_id, redact_customer_ids

logger = logging.getLogger(__name__)

CUSTOMER_DETAILS_QUERY = (
    "SELECT customer.id, customer.descriptive_name, customer.currency_code, "
    "customer.time_zone, customer.manager FROM customer LIMIT 1"
)


@dataclass
class AccountSyncResult:
    total: int = 0
    managers: int = 0
    customer_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": True, "total": self.total, "managers": self.managers, "customer_ids": self.customer_ids}


async def _customer_details(client: GoogleAdsRestClient, customer_id: str) -> Optional[Dict[str, Any]]:
    try:
        rows = await client.search(customer_id, CUSTOMER_DETAILS_QUERY)
    except (GoogleAdsApiError, httpx.HTTPError) as exc:
        logger.warning("[ACCOUNTS] Details lookup failed for %s: %s", mask_customer_id(customer_id), redact_customer_ids(exc))
        return None
    if not rows:
        return None
    return rows[0].get("customer") or {}


def _upsert_account(db: Session, user_id: str, company_id: Optional[str], customer_id: str, details: Optional[Dict[str, Any]]) -> AccountMap:
    account = (
        db.query(AccountMap)
        .filter(AccountMap.user_id == user_id, AccountMap.customer_id == customer_id)
        .first()
    )
    if account is None:
        account = AccountMap(user_id=user_id, customer_id=customer_id, company_id=company_id)
        db.add(account)

    if details is not None:
        account.account_name = details.get("descriptiveName") or account.account_name
        account.currency_code = details.get("currencyCode") or account.currency_code
        account.time_zone = details.get("timeZone") or account.time_zone
        account.account_type = AccountTypeEnum.manager if details.get("manager") else AccountTypeEnum.client
    elif account.account_type is None:
        account.account_type = AccountTypeEnum.client
    return account


async def sync_accessible_accounts(
    db: Session,
    http: httpx.AsyncClient,
    settings: Settings,
    user_id: str,
    company_id: Optional[str] = None,
) -> AccountSyncResult:
    """Refresh `accounts_map` for the user from listAccessibleCustomers.

    Raises:
        TokenNotFoundError / TokenRefreshError: No usable token.
        GoogleAdsApiError: The listing call itself failed.
    """
    access_token = await get_valid_access_token(db, http, settings, user_id, company_id)
    client = GoogleAdsRestClient(
        http,
        developer_token=settings.GOOGLE_ADS_DEVELOPER_TOKEN,
        access_token=access_token,
        api_version=settings.GOOGLE_ADS_API_VERSION,
    )

    customer_ids = await client.list_accessible_customers()
    result = AccountSyncResult(total=len(customer_ids), customer_ids=customer_ids)

    for customer_id in customer_ids:
        details = await _customer_details(client, customer_id)
        account = _upsert_account(db, user_id, company_id, customer_id, details)
        if account.account_type == AccountTypeEnum.manager:
            result.managers += 1

    db.commit()
    logger.info("[ACCOUNTS] Synced %d accounts (%d managers)", result.total, result.managers)
    return result
