"""MCC (manager account) resolution service.

WHAT:
    Finds which of a user's manager accounts can act on a target advertiser
    account, so API calls can send it as the `login-customer-id` header.

WHY:
    Accounts reached through an MCC reject calls without the right manager
    header. Probing every candidate is slow, so results (including "nobody
    manages this") are cached per (user, customer) for 24 hours.

HOW:
    1. Sanitize the target id to digits only
    2. Trust an AccountBinding verified within the TTL (positive or negative)
    3. Otherwise get a valid access token and probe candidates in order:
       the user's saved login_customer_ids (most recently updated token
       first), then managers in the accounts directory
    4. First candidate whose customer_client query returns the target wins
    5. Upsert the binding with the winner or the "" sentinel. A run where
       some candidate stayed unreachable after retries is not cached.

CONSTRAINTS:
    - First match wins. When several managers own the target, the one tried
      first is cached, not the closest in the hierarchy.
    - A stale negative can persist for up to 24h.
    - Concurrent resolutions for the same key are last-writer-wins.

REFERENCES:
    - https://developers.google.com/google-ads/api/fields/v21/customer_client
    - metricus/services/token_service.py
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Union

import httpx
from sqlalchemy.orm import Session

from metricus.deps import Settings
from metricus.models import AccountBinding, AccountMap, AccountTypeEnum, GoogleToken, utcnow
from metricus.services.backoff import DEFAULT_MAX_RETRIES, is_retryable_error, with_backoff
from metricus.services.google_ads_client import GoogleAdsApiError, GoogleAdsRestClient
from metricus.services.token_service import TokenNotFoundError, get_valid_access_token
from metricus.utils.customer_ids import mask_customer_id, sanitize_customer_id

logger = logging.getLogger(__name__)

CACHE_TTL = timedelta(hours=24)
NOT_MANAGED_SENTINEL = ""


class NoTokenError(Exception):
    """Resolution needs an access token and the user has none available."""


@dataclass(frozen=True)
class ManagedBy:
    """Target is managed by `login_customer_id`."""
    login_customer_id: str
    cached: bool = False


@dataclass(frozen=True)
class NotManaged:
    """No candidate manager account manages the target."""
    cached: bool = False


Resolution = Union[ManagedBy, NotManaged]


def manager_probe_query(target_customer_id: str) -> str:
    """GAQL asking a manager whether `target_customer_id` is one of its clients."""
    return (
        "SELECT customer_client.client_customer, customer_client.manager, "
        "customer_client.descriptive_name, customer_client.status "
        f"FROM customer_client WHERE customer_client.id = {sanitize_customer_id(target_customer_id)} "
        "LIMIT 1"
    )


class MccResolver:
    """Resolve the managing MCC for advertiser accounts of one user.

    Built per invocation with the request's session, HTTP client and settings.
    Probes go through the backoff executor; `sleep` is injectable for tests.
    """

    def __init__(
        self,
        db: Session,
        http: httpx.AsyncClient,
        settings: Settings,
        *,
        sleep=asyncio.sleep,
        max_retries: Optional[int] = None,
    ):
        self.db = db
        self.http = http
        self.settings = settings
        self.sleep = sleep
        if max_retries is None:
            max_retries = settings.INGEST_MAX_RETRIES if settings is not None else DEFAULT_MAX_RETRIES
        self.max_retries = max_retries

    # --- Cache -----------------------------------------------------------

    def get_cached(self, user_id: str, customer_id: str, now: Optional[datetime] = None) -> Optional[Resolution]:
        """Return the cached resolution if verified within the TTL, else None."""
        now = now or utcnow()
        binding = (
            self.db.query(AccountBinding)
            .filter(
                AccountBinding.user_id == user_id,
                AccountBinding.customer_id == sanitize_customer_id(customer_id),
                AccountBinding.last_verified_at >= now - CACHE_TTL,
            )
            .first()
        )
        if binding is None:
            return None
        if binding.resolved_login_customer_id == NOT_MANAGED_SENTINEL:
            return NotManaged(cached=True)
        return ManagedBy(login_customer_id=binding.resolved_login_customer_id, cached=True)

    def _store(self, user_id: str, customer_id: str, resolved: str, now: datetime) -> None:
        binding = self.db.get(AccountBinding, (user_id, customer_id))
        if binding is None:
            binding = AccountBinding(user_id=user_id, customer_id=customer_id)
            self.db.add(binding)
        binding.resolved_login_customer_id = resolved
        binding.last_verified_at = now
        self.db.commit()

    # --- Candidates ------------------------------------------------------

    def candidate_managers(self, user_id: str, exclude: Optional[str] = None) -> List[str]:
        """Ordered, de-duplicated manager ids to probe for this user.

        Saved login_customer_ids come first (most recently updated token
        first), followed by managers from the accounts directory in the order
        they were added. The target itself is never a candidate.
        """
        candidates: List[str] = []

        def add(raw):
            cid = sanitize_customer_id(raw)
            if cid and cid != exclude and cid not in candidates:
                candidates.append(cid)

        tokens = (
            self.db.query(GoogleToken.login_customer_id)
            .filter(GoogleToken.user_id == user_id, GoogleToken.login_customer_id.isnot(None))
            .order_by(GoogleToken.updated_at.desc())
            .all()
        )
        for (login_customer_id,) in tokens:
            add(login_customer_id)

        managers = (
            self.db.query(AccountMap.customer_id)
            .filter(AccountMap.user_id == user_id, AccountMap.account_type == AccountTypeEnum.manager)
            .order_by(AccountMap.created_at.asc())
            .all()
        )
        for (customer_id,) in managers:
            add(customer_id)

        return candidates

    # --- Probing ---------------------------------------------------------

    async def probe(self, client: GoogleAdsRestClient, manager_id: str, target_id: str) -> Optional[bool]:
        """Ask `manager_id` whether it manages `target_id`.

        Returns:
            True or False when the manager answered. A permanent API failure
            (e.g. 403 for a manager the user lost access to) counts as False
            so the remaining candidates still get probed. None when the
            question could not be answered because transient failures
            (429, 5xx, timeouts) outlasted the retries.
        """
        query = manager_probe_query(target_id)
        result = await with_backoff(
            lambda: client.search(manager_id, query, login_customer_id=manager_id),
            max_retries=self.max_retries,
            sleep=self.sleep,
            label=f"probe {mask_customer_id(manager_id)}",
        )
        if result.success:
            return len(result.result) > 0

        exc = result.error
        if not isinstance(exc, (GoogleAdsApiError, httpx.HTTPError)):
            raise exc
        logger.info(
            "[MCC_RESOLVER] Probe %s -> %s failed: %s (status=%s, retries=%d)",
            mask_customer_id(manager_id), mask_customer_id(target_id),
            type(exc).__name__, getattr(exc, "status_code", None), result.retries,
        )
        if is_retryable_error(exc):
            return None
        return False

    async def _access_token(self, user_id: str) -> str:
        try:
            return await get_valid_access_token(self.db, self.http, self.settings, user_id)
        except TokenNotFoundError as exc:
            raise NoTokenError(str(exc)) from exc

    async def resolve_manager_for(
        self,
        user_id: str,
        target_customer_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> Resolution:
        """Return ManagedBy(manager) or NotManaged for the target account.

        Raises:
            NoTokenError: Cache miss and the user has no stored token.
            TokenRefreshError: Cache miss and the token could not be refreshed.
        """
        target = sanitize_customer_id(target_customer_id)
        now = now or utcnow()

        cached = self.get_cached(user_id, target, now=now)
        if cached is not None:
            logger.info(
                "[MCC_RESOLVER] Cache hit for %s: %s",
                mask_customer_id(target),
                mask_customer_id(cached.login_customer_id) if isinstance(cached, ManagedBy) else "not managed",
            )
            return cached

        access_token = await self._access_token(user_id)
        client = GoogleAdsRestClient(
            self.http,
            developer_token=self.settings.GOOGLE_ADS_DEVELOPER_TOKEN,
            access_token=access_token,
            api_version=self.settings.GOOGLE_ADS_API_VERSION,
        )

        candidates = self.candidate_managers(user_id, exclude=target)
        logger.info("[MCC_RESOLVER] Probing %d candidates for %s", len(candidates), mask_customer_id(target))

        inconclusive = 0
        for manager_id in candidates:
            managed = await self.probe(client, manager_id, target)
            if managed is None:
                inconclusive += 1
            elif managed:
                self._store(user_id, target, manager_id, now)
                logger.info("[MCC_RESOLVER] %s managed by %s", mask_customer_id(target), mask_customer_id(manager_id))
                return ManagedBy(login_customer_id=manager_id)

        if inconclusive:
            # Unanswered candidates may still manage the target; do not cache a negative
            logger.warning(
                "[MCC_RESOLVER] No manager confirmed for %s, %d candidates unreachable",
                mask_customer_id(target), inconclusive,
            )
            return NotManaged()

        self._store(user_id, target, NOT_MANAGED_SENTINEL, now)
        logger.info("[MCC_RESOLVER] No manager found for %s", mask_customer_id(target))
        return NotManaged()
