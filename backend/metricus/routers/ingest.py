"""
Google Ads metrics ingestion API.

WHY:
- Pull campaign metrics for connected Google Ads accounts into `metrics`
- The daily cron must make progress even when some accounts fail
- Other internal jobs push pre-computed rows through the same upsert

WHAT:
- POST /ingest: one account, user bearer (own user_id) or internal caller
- POST /ingest-daily: every connected account, internal caller only
- POST /ingest-metrics: raw metric rows, internal x-api-key only

REFERENCES:
- metricus/services/metrics_ingestor.py (ingest_customer, run_daily_batch)
- metricus/services/metrics_store.py (upsert_metric_rows)
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List

import httpx
from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Principal, Settings, get_http_client, get_principal, require_api_key, require_configured, require_internal
from ..schemas import IngestRequest, IngestResponse, MetricIn, MetricsIntakeResponse
from ..services.metrics_ingestor import MetricsIngestor, default_date_range
from ..services.metrics_store import upsert_metric_rows
from ..telemetry import capture_message
from ..utils.customer_ids import sanitize_customer_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Ingestion"])


@router.post("/ingest", response_model=IngestResponse)
async def ingest_customer(
    payload: IngestRequest,
    principal: Principal = Depends(get_principal),
    settings: Settings = Depends(require_configured),
    db: Session = Depends(get_db),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """
    Ingest campaign metrics for one Google Ads account.

    WHAT:
        Resolves the managing MCC, pulls daily campaign metrics with backoff,
        and upserts them. Returns 500 {error} when the run fails.
    WHY:
        Entry point for on-demand refreshes from the dashboard and for
        internal jobs.
    """
    if not principal.is_internal and principal.user_id != payload.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot ingest for another user")

    if payload.start_date is None and payload.end_date is None:
        start_date, end_date = default_date_range(lookback_days=settings.INGEST_LOOKBACK_DAYS)
    else:
        end_date = payload.end_date or default_date_range()[1]
        start_date = payload.start_date or end_date - timedelta(days=settings.INGEST_LOOKBACK_DAYS)

    if start_date > end_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="startDate must be on or before endDate")

    customer_id = sanitize_customer_id(payload.customer_id)
    if not customer_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="customer_id must contain digits")

    ingestor = MetricsIngestor(db, http, settings)
    outcome = await ingestor.ingest_customer(
        customer_id,
        payload.user_id,
        start_date,
        end_date,
        on_not_managed=payload.on_not_managed,
    )

    if not outcome.success:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": outcome.error})

    return IngestResponse(
        success=True,
        records_processed=outcome.records_processed,
        customer_id=outcome.customer_id,
        inserted=outcome.inserted,
        updated=outcome.updated,
        retries=outcome.retries,
    )


@router.post("/ingest-daily")
async def ingest_daily(
    principal: Principal = Depends(require_internal),
    settings: Settings = Depends(require_configured),
    db: Session = Depends(get_db),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """
    Run the daily batch over every connected account (cron-triggered).

    Partial failure still returns 200 with a mixed summary; only a run where
    every account failed returns 500.
    """
    ingestor = MetricsIngestor(db, http, settings)
    summary = await ingestor.run_daily_batch()

    body: Dict[str, Any] = {
        "summary": summary.summary_dict(),
        "results": [result.to_dict() for result in summary.results],
    }

    if summary.total_accounts == 0:
        body.update(success=True, message="No customer accounts to process")
        return body

    if summary.all_failed:
        capture_message(
            "Daily Google Ads ingestion failed for every account",
            level="error",
            extra=summary.summary_dict(),
        )
        body.update(success=False, error=f"All {summary.total_accounts} accounts failed")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)

    body.update(
        success=True,
        message=(
            f"Daily ingestion completed: {summary.successful}/{summary.total_accounts} "
            "accounts processed successfully"
        ),
    )
    return body


@router.post("/ingest-metrics", response_model=MetricsIntakeResponse, response_model_exclude_none=True)
def ingest_metrics(
    payload: Any = Body(...),
    principal: Principal = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    """
    Upsert pre-computed metric rows (one object or a list).

    Invalid rows are reported by index; valid rows are still written.
    """
    items: List[Any] = payload if isinstance(payload, list) else [payload]

    rows: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for index, item in enumerate(items):
        try:
            metric = MetricIn.model_validate(item)
        except ValidationError as exc:
            errors.append({"index": index, "error": "; ".join(e["msg"] for e in exc.errors())})
            continue
        row = metric.model_dump()
        if row.get("customer_id"):
            row["customer_id"] = sanitize_customer_id(row["customer_id"])
        rows.append(row)

    inserted, updated = upsert_metric_rows(db, rows) if rows else (0, 0)
    if errors:
        logger.warning("[INGEST] Metrics intake rejected %d of %d rows", len(errors), len(items))

    return MetricsIntakeResponse(
        success=not errors,
        inserted=inserted,
        updated=updated,
        errors=errors or None,
    )
