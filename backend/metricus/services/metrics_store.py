"""Metrics store: derived ratios and idempotent upserts of daily metric rows.

WHAT:
    Computes cpa/roas/ctr/conv_rate from base measures and upserts rows keyed
    by (customer_id, date, campaign_id, platform).

WHY:
    Both the Google Ads ingestor and the internal `/ingest-metrics` intake
    write the same table; sharing one upsert keeps re-ingestion idempotent.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from metricus.models import Metric

logger = logging.getLogger(__name__)

DERIVED_FIELDS = ("cpa", "roas", "ctr", "conv_rate")
NATURAL_KEY = ("customer_id", "date", "campaign_id", "platform")


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    if not denominator:
        return 0.0
    return round(float(numerator) / float(denominator) * scale, 6)


def compute_derived_metrics(row: Dict[str, Any]) -> Dict[str, float]:
    """Derived ratios for one row. A zero denominator yields 0."""
    spend = row.get("spend") or 0
    leads = row.get("leads") or 0
    revenue = row.get("revenue") or 0
    clicks = row.get("clicks") or 0
    impressions = row.get("impressions") or 0
    return {
        "cpa": _ratio(spend, leads),
        "roas": _ratio(revenue, spend),
        "ctr": _ratio(clicks, impressions, 100.0),
        "conv_rate": _ratio(leads, clicks, 100.0),
    }


def with_derived_metrics(row: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of `row` with any missing derived ratio filled in."""
    derived = compute_derived_metrics(row)
    merged = dict(row)
    for field in DERIVED_FIELDS:
        if merged.get(field) is None:
            merged[field] = derived[field]
    return merged


def _find_existing(db: Session, row: Dict[str, Any]) -> Optional[Metric]:
    query = db.query(Metric)
    for field in NATURAL_KEY:
        column = getattr(Metric, field)
        value = row.get(field)
        query = query.filter(column.is_(None) if value is None else column == value)
    return query.first()


def upsert_metric_rows(db: Session, rows: Iterable[Dict[str, Any]]) -> Tuple[int, int]:
    """Insert or update metric rows by natural key and commit.

    Returns:
        (inserted, updated) counts.
    """
    inserted = 0
    updated = 0
    for raw in rows:
        row = with_derived_metrics(raw)
        existing = _find_existing(db, row)
        if existing is None:
            db.add(Metric(**row))
            # Flush so a later row with the same key in this batch updates it
            db.flush()
            inserted += 1
        else:
            for field, value in row.items():
                setattr(existing, field, value)
            updated += 1

    db.commit()
    logger.info("[METRICS_STORE] Upserted metrics (inserted=%d, updated=%d)", inserted, updated)
    return inserted, updated
