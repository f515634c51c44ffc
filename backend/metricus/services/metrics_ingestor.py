"""Google Ads metrics ingestion (single account and daily batch).

WHAT:
    Pulls daily campaign metrics for one advertiser account and upserts them
    into the metrics table, recording each run in `google_ads_ingestions`.
    The daily batch runs that for every connected account, one at a time.

WHY:
    - The dashboard reads `metrics`; Google Ads is the source of truth.
    - One bad account must never block ingestion for the rest: per-account
      failures are recorded and summarized, not raised.

HOW:
    1. Create the ingestion record (status=running)
    2. Resolve the managing MCC inside the backoff executor (a cache miss
       may refresh the token); apply the caller's not-managed policy
    3. Inside the backoff executor: get a valid access token, run the
       paginated campaign query, transform rows, upsert
    4. Mark the record completed (records_processed) or failed (error)

REFERENCES:
    - metricus/services/mcc_resolver.py
    - metricus/services/backoff.py
    - metricus/services/metrics_store.py
    - https://developers.google.com/google-ads/api/fields/v21/campaign
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

import httpx
from sqlalchemy.orm import Session

from metricus.deps import Settings
from metricus.models import GoogleAdsIngestion, GoogleToken, IngestionStatusEnum, PlatformEnum, utcnow
from metricus.services.backoff import with_backoff
from metricus.services.google_ads_client import GoogleAdsRestClient
from metricus.services.mcc_resolver import ManagedBy, MccResolver, NoTokenError, NotManaged
from metricus.services.metrics_store import upsert_metric_rows
from metricus.services.token_service import TokenRefreshError, get_valid_access_token
from metricus.telemetry import capture_exception
from metricus.utils.customer_ids import mask_customer_id, redact_customer_ids, sanitize_customer_id

logger = logging.getLogger(__name__)


class NotManagedPolicy(str, enum.Enum):
    """What an ingestion does when no MCC manages the account.

    - proceed: query without a login-customer-id header
    - fail: stop before calling the platform
    """
    proceed = "proceed"
    fail = "fail"


class ManagerRequiredError(Exception):
    """Raised when the `fail` policy applies to an unmanaged account."""


def campaign_metrics_query(start_date: date, end_date: date) -> str:
    return (
        "SELECT segments.date, campaign.id, campaign.name, campaign.status, "
        "metrics.impressions, metrics.clicks, metrics.cost_micros, "
        "metrics.conversions, metrics.conversions_value "
        "FROM campaign "
        f"WHERE segments.date BETWEEN '{start_date.isoformat()}' AND '{end_date.isoformat()}' "
        "ORDER BY segments.date DESC"
    )


def default_date_range(today: Optional[date] = None, lookback_days: int = 7) -> Tuple[date, date]:
    """(start, end) covering the last `lookback_days` days ending today."""
    end = today or date.today()
    return end - timedelta(days=lookback_days), end


def transform_campaign_row(row: Dict[str, Any], customer_id: str) -> Dict[str, Any]:
    """Map one googleAds:search result to a metrics row.

    REST responses encode int64 fields as strings (impressions, costMicros).
    """
    segments = row.get("segments") or {}
    campaign = row.get("campaign") or {}
    metrics = row.get("metrics") or {}

    metric_date = date.fromisoformat(segments["date"])
    campaign_id = str(campaign.get("id", ""))
    conversions = float(metrics.get("conversions") or 0)

    return {
        "date": metric_date,
        "platform": PlatformEnum.google_ads,
        "client_id": customer_id,
        "customer_id": customer_id,
        "campaign_id": campaign_id,
        "campaign_name": campaign.get("name"),
        "impressions": int(metrics.get("impressions") or 0),
        "clicks": int(metrics.get("clicks") or 0),
        "spend": int(metrics.get("costMicros") or 0) / 1_000_000,
        "leads": conversions,
        "conversions": conversions,
        "revenue": float(metrics.get("conversionsValue") or 0),
        "row_key": f"{customer_id}:{metric_date.isoformat()}:{campaign_id}",
    }


@dataclass
class IngestOutcome:
    """Result of ingesting one account."""
    success: bool
    customer_id: str
    inserted: int = 0
    updated: int = 0
    records_processed: int = 0
    retries: int = 0
    login_customer_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "customer_id": self.customer_id,
            "success": self.success,
            "retries": self.retries,
        }
        if self.success:
            data.update(inserted=self.inserted, updated=self.updated, records_processed=self.records_processed)
        else:
            data["error"] = self.error
        return data


@dataclass
class DailyIngestionSummary:
    """Aggregate of a daily batch run."""
    total_accounts: int
    successful: int
    failed: int
    total_inserted: int
    total_updated: int
    date_range: str
    results: List[IngestOutcome] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return self.total_accounts > 0 and self.successful == 0

    def summary_dict(self) -> Dict[str, Any]:
        return {
            "total_accounts": self.total_accounts,
            "successful": self.successful,
            "failed": self.failed,
            "total_inserted": self.total_inserted,
            "total_updated": self.total_updated,
            "date_range": self.date_range,
        }


class MetricsIngestor:
    """Ingest Google Ads campaign metrics for accounts of any user.

    Built per invocation; `sleep` is injectable so tests never wait.
    """

    def __init__(self, db: Session, http: httpx.AsyncClient, settings: Settings, *, sleep=asyncio.sleep):
        self.db = db
        self.http = http
        self.settings = settings
        self.sleep = sleep
        self.resolver = MccResolver(db, http, settings, sleep=sleep)

    # --- Record bookkeeping ----------------------------------------------

    def _start_record(self, user_id: str, customer_id: str, start_date: date, end_date: date) -> GoogleAdsIngestion:
        record = GoogleAdsIngestion(
            user_id=user_id,
            customer_id=customer_id,
            start_date=start_date,
            end_date=end_date,
            status=IngestionStatusEnum.running,
        )
        self.db.add(record)
        self.db.commit()
        return record

    def _fail(self, record: GoogleAdsIngestion, outcome: IngestOutcome) -> IngestOutcome:
        self.db.rollback()
        record.status = IngestionStatusEnum.failed
        record.error_message = outcome.error
        record.completed_at = utcnow()
        self.db.commit()
        logger.warning(
            "[INGEST] Ingestion failed for %s: %s",
            mask_customer_id(outcome.customer_id), redact_customer_ids(outcome.error),
        )
        return outcome

    def _complete(self, record: GoogleAdsIngestion, outcome: IngestOutcome) -> IngestOutcome:
        record.status = IngestionStatusEnum.completed
        record.records_processed = outcome.records_processed
        record.completed_at = utcnow()
        self.db.commit()
        logger.info(
            "[INGEST] Ingestion completed for %s (records=%d, inserted=%d, updated=%d, retries=%d)",
            mask_customer_id(outcome.customer_id), outcome.records_processed,
            outcome.inserted, outcome.updated, outcome.retries,
        )
        return outcome

    # --- Single account --------------------------------------------------

    async def ingest_customer(
        self,
        customer_id: str,
        user_id: str,
        start_date: date,
        end_date: date,
        *,
        on_not_managed: NotManagedPolicy = NotManagedPolicy.proceed,
    ) -> IngestOutcome:
        """Ingest campaign metrics for one account over [start_date, end_date].

        Returns a failure outcome (never raises) for resolution, token and
        exhausted/non-retryable platform errors.
        """
        cid = sanitize_customer_id(customer_id)
        record = self._start_record(user_id, cid, start_date, end_date)
        logger.info("[INGEST] Starting ingestion for %s (%s to %s)", mask_customer_id(cid), start_date, end_date)

        resolution_result = await with_backoff(
            lambda: self.resolver.resolve_manager_for(user_id, cid),
            max_retries=self.settings.INGEST_MAX_RETRIES,
            sleep=self.sleep,
            label=f"resolve {mask_customer_id(cid)}",
        )
        if not resolution_result.success:
            exc = resolution_result.error
            if not isinstance(exc, (NoTokenError, TokenRefreshError, httpx.HTTPError, ValueError)):
                capture_exception(exc, extra={"customer_id": mask_customer_id(cid), "stage": "resolve"})
            return self._fail(record, IngestOutcome(
                success=False,
                customer_id=cid,
                retries=resolution_result.retries,
                error=str(exc),
            ))

        resolution = resolution_result.result
        resolution_retries = resolution_result.retries

        if isinstance(resolution, ManagedBy):
            login_customer_id = resolution.login_customer_id
        elif isinstance(resolution, NotManaged):
            if on_not_managed is NotManagedPolicy.fail:
                error = ManagerRequiredError(f"No manager account manages {mask_customer_id(cid)}")
                return self._fail(record, IngestOutcome(
                    success=False, customer_id=cid, retries=resolution_retries, error=str(error),
                ))
            login_customer_id = None
        else:
            raise TypeError(f"Unhandled resolution: {resolution!r}")

        query = campaign_metrics_query(start_date, end_date)

        async def operation():
            access_token = await get_valid_access_token(self.db, self.http, self.settings, user_id)
            client = GoogleAdsRestClient(
                self.http,
                developer_token=self.settings.GOOGLE_ADS_DEVELOPER_TOKEN,
                access_token=access_token,
                api_version=self.settings.GOOGLE_ADS_API_VERSION,
            )
            rows = await client.search(cid, query, login_customer_id=login_customer_id)
            metric_rows = [transform_campaign_row(row, cid) for row in rows]
            try:
                inserted, updated = upsert_metric_rows(self.db, metric_rows)
            except Exception:
                self.db.rollback()
                raise
            return inserted, updated, len(metric_rows)

        result = await with_backoff(
            operation,
            max_retries=self.settings.INGEST_MAX_RETRIES,
            sleep=self.sleep,
            label=f"ingest {mask_customer_id(cid)}",
        )

        if not result.success:
            capture_exception(result.error, extra={"customer_id": mask_customer_id(cid), "retries": result.retries})
            return self._fail(record, IngestOutcome(
                success=False,
                customer_id=cid,
                retries=resolution_retries + result.retries,
                login_customer_id=login_customer_id,
                error=str(result.error),
            ))

        inserted, updated, processed = result.result
        return self._complete(record, IngestOutcome(
            success=True,
            customer_id=cid,
            inserted=inserted,
            updated=updated,
            records_processed=processed,
            retries=resolution_retries + result.retries,
            login_customer_id=login_customer_id,
        ))

    # --- Daily batch -----------------------------------------------------

    def connected_accounts(self) -> List[Tuple[str, str]]:
        """(user_id, customer_id) for tokens with an account and access token, in table order."""
        rows = (
            self.db.query(GoogleToken.user_id, GoogleToken.customer_id)
            .filter(GoogleToken.customer_id.isnot(None), GoogleToken.access_token_enc.isnot(None))
            .order_by(GoogleToken.created_at.asc())
            .all()
        )
        return [(user_id, customer_id) for user_id, customer_id in rows]

    async def run_daily_batch(self, *, today: Optional[date] = None) -> DailyIngestionSummary:
        """Ingest every connected account sequentially with a fixed pause between accounts.

        Per-account failures (including unexpected exceptions) are recorded in
        the results; the batch itself only reports failure via `all_failed`.
        """
        accounts = self.connected_accounts()
        start_date, end_date = default_date_range(today, self.settings.INGEST_LOOKBACK_DAYS)
        logger.info("[INGEST_DAILY] Found %d accounts to process (%s to %s)", len(accounts), start_date, end_date)

        results: List[IngestOutcome] = []
        for index, (user_id, customer_id) in enumerate(accounts):
            if index:
                await self.sleep(self.settings.INGEST_ACCOUNT_PAUSE_SECONDS)
            try:
                outcome = await self.ingest_customer(
                    customer_id, user_id, start_date, end_date,
                    on_not_managed=NotManagedPolicy.proceed,
                )
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "[INGEST_DAILY] Unexpected error processing %s: %s: %s",
                    mask_customer_id(customer_id), type(exc).__name__, redact_customer_ids(exc),
                )
                capture_exception(exc, extra={"customer_id": mask_customer_id(customer_id)})
                self.db.rollback()
                outcome = IngestOutcome(
                    success=False,
                    customer_id=sanitize_customer_id(customer_id),
                    error=f"Unexpected error: {exc}",
                )
            results.append(outcome)

        successful = [r for r in results if r.success]
        summary = DailyIngestionSummary(
            total_accounts=len(accounts),
            successful=len(successful),
            failed=len(results) - len(successful),
            total_inserted=sum(r.inserted for r in successful),
            total_updated=sum(r.updated for r in successful),
            date_range=f"{start_date.isoformat()} to {end_date.isoformat()}",
            results=results,
        )
        logger.info("[INGEST_DAILY] Daily ingestion completed: %s", summary.summary_dict())
        return summary
