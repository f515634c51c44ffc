"""Google Ads REST API client.

WHAT:
    Thin async wrapper over the Google Ads REST interface: paginated GAQL
    search and the accessible-customers listing.

WHY:
    Every call needs an explicitly refreshed access token and, for accounts
    reached through a manager, a per-call `login-customer-id` header. A
    per-request client built from those values keeps the manager choice
    explicit at each call site.

CONSTRAINTS:
    - Customer ids must be digits only (use utils.customer_ids.sanitize_customer_id)
    - googleAds:search pages are fixed-size; follow nextPageToken until absent

REFERENCES:
    - https://developers.google.com/google-ads/api/rest/common/search
    - https://developers.google.com/google-ads/api/rest/reference/rest/v21/customers/listAccessibleCustomers
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from metricus.utils.customer_ids import mask_customer_id, sanitize_customer_id

logger = logging.getLogger(__name__)

GOOGLE_ADS_API_BASE = "https://googleads.googleapis.com"


class GoogleAdsApiError(Exception):
    """Non-2xx response from the Google Ads API.

    `status_code` drives retry classification; `body` keeps the raw upstream
    error for diagnostics.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def _error_message(response: httpx.Response) -> str:
    try:
        error = response.json().get("error") or {}
        message = error.get("message")
        if message:
            return f"Google Ads API error {response.status_code}: {message}"
    except ValueError:
        pass
    return f"Google Ads API error {response.status_code}"


class GoogleAdsRestClient:
    """Per-invocation Google Ads client.

    Args:
        http: Request-scoped httpx.AsyncClient.
        developer_token: GOOGLE_ADS_DEVELOPER_TOKEN.
        access_token: Valid OAuth access token (see token_service).
        api_version: REST API version segment, e.g. "v21".
    """

    def __init__(self, http: httpx.AsyncClient, developer_token: str, access_token: str, api_version: str = "v21"):
        self.http = http
        self.developer_token = developer_token
        self.access_token = access_token
        self.api_version = api_version

    def _url(self, path: str) -> str:
        return f"{GOOGLE_ADS_API_BASE}/{self.api_version}/{path}"

    def _headers(self, login_customer_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "developer-token": self.developer_token,
            "Content-Type": "application/json",
        }
        login_id = sanitize_customer_id(login_customer_id)
        if login_id:
            headers["login-customer-id"] = login_id
        return headers

    async def search(
        self,
        customer_id: str,
        query: str,
        login_customer_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Run a GAQL query and return every result row across pages.

        Raises:
            GoogleAdsApiError: On any non-2xx response.
        """
        cid = sanitize_customer_id(customer_id)
        url = self._url(f"customers/{cid}/googleAds:search")
        headers = self._headers(login_customer_id)

        rows: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        pages = 0
        while True:
            body: Dict[str, Any] = {"query": query}
            if page_token:
                body["pageToken"] = page_token

            response = await self.http.post(url, headers=headers, json=body)
            if not response.is_success:
                logger.warning(
                    "[GOOGLE_ADS] search failed for %s (status=%s)",
                    mask_customer_id(cid), response.status_code,
                )
                raise GoogleAdsApiError(_error_message(response), response.status_code, response.text)

            data = response.json()
            rows.extend(data.get("results", []))
            pages += 1
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.debug("[GOOGLE_ADS] search for %s returned %d rows in %d pages", mask_customer_id(cid), len(rows), pages)
        return rows

    async def list_accessible_customers(self) -> List[str]:
        """Return digit-only ids of customers the OAuth user can access directly."""
        response = await self.http.get(self._url("customers:listAccessibleCustomers"), headers=self._headers())
        if not response.is_success:
            raise GoogleAdsApiError(_error_message(response), response.status_code, response.text)

        resource_names = response.json().get("resourceNames", [])
        # Resource names look like "customers/1234567890"
        return [sanitize_customer_id(name.split("/")[-1]) for name in resource_names]
