"""Tests for single-account ingestion and the daily batch.

WHAT:
    Drives MetricsIngestor against the fake Google transport with sleeps
    recorded instead of awaited.

REFERENCES:
    metricus/services/metrics_ingestor.py
"""

import asyncio
import json
import logging
from datetime import date, timedelta

import httpx
from sqlalchemy.exc import SQLAlchemyError

from metricus.models import GoogleAdsIngestion, IngestionStatusEnum, Metric, utcnow
from metricus.services.metrics_ingestor import (
    DailyIngestionSummary,
    IngestOutcome,
    MetricsIngestor,
    NotManagedPolicy,
    default_date_range,
    transform_campaign_row,
)

CUSTOMER = "1234567890"
MANAGER = "1111111111"
START = date(2026, 10, 1)
END = date(2026, 10, 7)


def _api_row(day="2026-10-01", campaign_id="42", clicks="50"):
    return {
        "segments": {"date": day},
        "campaign": {"id": campaign_id, "name": f"Campaign {campaign_id}", "status": "ENABLED"},
        "metrics": {
            "impressions": "1000",
            "clicks": clicks,
            "costMicros": "100000000",
            "conversions": 4.0,
            "conversionsValue": 250.0,
        },
    }


def _respond_with(*rows):
    return lambda body, headers: httpx.Response(200, json={"results": list(rows)})


def _run(db, fake_google, settings, coro_factory):
    """Run `coro_factory(ingestor)` with a recording sleep; return (result, sleeps)."""
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    async def run():
        async with fake_google.client() as http:
            ingestor = MetricsIngestor(db, http, settings, sleep=fake_sleep)
            return await coro_factory(ingestor)

    return asyncio.run(run()), sleeps


def _ingest(db, fake_google, settings, customer_id=CUSTOMER, user_id="user-1", **kwargs):
    return _run(
        db, fake_google, settings,
        lambda ingestor: ingestor.ingest_customer(customer_id, user_id, START, END, **kwargs),
    )


def _search_calls(fake_google):
    return [r for r in fake_google.ads_calls if b"FROM campaign" in r.content]


# ============================================================================
# Pure helpers
# ============================================================================

def test_transform_campaign_row_converts_micros_and_strings():
    row = transform_campaign_row(_api_row(), CUSTOMER)

    assert row["date"] == START
    assert row["spend"] == 100.0
    assert row["impressions"] == 1000
    assert row["clicks"] == 50
    assert row["leads"] == 4.0
    assert row["revenue"] == 250.0
    assert row["campaign_id"] == "42"
    assert row["row_key"] == f"{CUSTOMER}:2026-10-01:42"


def test_default_date_range_covers_lookback():
    assert default_date_range(date(2026, 10, 19), 7) == (date(2026, 10, 12), date(2026, 10, 19))


def test_all_failed_requires_at_least_one_account():
    empty = DailyIngestionSummary(0, 0, 0, 0, 0, "")
    assert empty.all_failed is False
    assert DailyIngestionSummary(2, 0, 2, 0, 0, "").all_failed is True
    assert DailyIngestionSummary(2, 1, 1, 0, 0, "").all_failed is False


# ============================================================================
# Single account
# ============================================================================

def test_ingest_unmanaged_account_proceeds_without_header(test_db_session, fake_google, settings, seed_token):
    seed_token()
    fake_google.search_responses[CUSTOMER] = _respond_with(_api_row(), _api_row(campaign_id="43"))

    outcome, sleeps = _ingest(test_db_session, fake_google, settings)

    assert outcome.success is True
    assert (outcome.inserted, outcome.updated, outcome.records_processed) == (2, 0, 2)
    assert outcome.retries == 0
    assert outcome.login_customer_id is None
    assert sleeps == []

    search = _search_calls(fake_google)
    assert len(search) == 1
    assert "login-customer-id" not in search[0].headers
    assert search[0].headers["developer-token"] == "test-dev-token"
    assert "BETWEEN '2026-10-01' AND '2026-10-07'" in json.loads(search[0].content)["query"]

    record = test_db_session.query(GoogleAdsIngestion).one()
    assert record.status == IngestionStatusEnum.completed
    assert record.records_processed == 2
    assert record.completed_at is not None

    metric = test_db_session.query(Metric).filter(Metric.campaign_id == "42").one()
    assert float(metric.spend) == 100.0
    assert float(metric.cpa) == 25.0
    assert float(metric.roas) == 2.5


def test_ingest_managed_account_sends_login_customer_id(test_db_session, fake_google, settings, seed_token):
    seed_token(login_customer_id=MANAGER)
    fake_google.managed[MANAGER] = {CUSTOMER}
    fake_google.search_responses[CUSTOMER] = _respond_with(_api_row())

    outcome, _ = _ingest(test_db_session, fake_google, settings)

    assert outcome.success is True
    assert outcome.login_customer_id == MANAGER
    assert _search_calls(fake_google)[0].headers["login-customer-id"] == MANAGER


def test_reingesting_same_range_updates_rows(test_db_session, fake_google, settings, seed_token):
    seed_token()
    fake_google.search_responses[CUSTOMER] = _respond_with(_api_row())
    _ingest(test_db_session, fake_google, settings)

    fake_google.search_responses[CUSTOMER] = _respond_with(_api_row(clicks="80"))
    outcome, _ = _ingest(test_db_session, fake_google, settings)

    assert (outcome.inserted, outcome.updated) == (0, 1)
    assert test_db_session.query(Metric).count() == 1
    assert test_db_session.query(Metric).one().clicks == 80


def test_rate_limited_search_is_retried(test_db_session, fake_google, settings, seed_token):
    seed_token()
    calls = []

    def flaky(body, headers):
        calls.append(body)
        if len(calls) == 1:
            return httpx.Response(429, json={"error": {"message": "RESOURCE_EXHAUSTED"}})
        return httpx.Response(200, json={"results": [_api_row()]})

    fake_google.search_responses[CUSTOMER] = flaky

    outcome, sleeps = _ingest(test_db_session, fake_google, settings)

    assert outcome.success is True
    assert outcome.retries == 1
    assert len(sleeps) == 1
    assert 1.0 <= sleeps[0] < 2.0


def test_persistent_server_errors_exhaust_retries(test_db_session, fake_google, settings, seed_token):
    seed_token()
    fake_google.search_responses[CUSTOMER] = lambda body, headers: httpx.Response(503, json={})

    outcome, sleeps = _ingest(test_db_session, fake_google, settings)

    assert outcome.success is False
    assert outcome.retries == settings.INGEST_MAX_RETRIES
    assert len(sleeps) == settings.INGEST_MAX_RETRIES
    assert len(_search_calls(fake_google)) == settings.INGEST_MAX_RETRIES + 1


def test_bad_request_fails_without_retry(test_db_session, fake_google, settings, seed_token):
    seed_token()
    fake_google.search_responses[CUSTOMER] = lambda body, headers: httpx.Response(
        400, json={"error": {"message": "Invalid GAQL"}}
    )

    outcome, sleeps = _ingest(test_db_session, fake_google, settings)

    assert outcome.success is False
    assert outcome.retries == 0
    assert sleeps == []
    assert "Invalid GAQL" in outcome.error

    record = test_db_session.query(GoogleAdsIngestion).one()
    assert record.status == IngestionStatusEnum.failed
    assert "Invalid GAQL" in record.error_message
    assert test_db_session.query(Metric).count() == 0


def test_fail_policy_stops_before_search(test_db_session, fake_google, settings, seed_token):
    seed_token()

    outcome, _ = _ingest(test_db_session, fake_google, settings, on_not_managed=NotManagedPolicy.fail)

    assert outcome.success is False
    assert "No manager account" in outcome.error
    assert _search_calls(fake_google) == []
    assert test_db_session.query(GoogleAdsIngestion).one().status == IngestionStatusEnum.failed


def test_missing_token_is_recorded_as_failure(test_db_session, fake_google, settings):
    outcome, _ = _ingest(test_db_session, fake_google, settings, user_id="nobody")

    assert outcome.success is False
    assert test_db_session.query(GoogleAdsIngestion).one().status == IngestionStatusEnum.failed


def test_transient_refresh_failure_during_resolution_is_retried(test_db_session, fake_google, settings, seed_token):
    seed_token(expires_in=timedelta(minutes=1))
    fake_google.token_responses.append((503, {"error": "backend_error"}))
    fake_google.search_responses[CUSTOMER] = _respond_with(_api_row())

    outcome, sleeps = _ingest(test_db_session, fake_google, settings)

    assert outcome.success is True
    assert outcome.retries == 1
    assert len(sleeps) == 1
    assert len(fake_google.token_calls) == 2
    assert test_db_session.query(GoogleAdsIngestion).one().status == IngestionStatusEnum.completed


def test_rejected_refresh_during_resolution_fails_without_retry(test_db_session, fake_google, settings, seed_token):
    seed_token(expires_in=timedelta(minutes=1))
    fake_google.token_responses.append((400, {"error": "invalid_grant"}))

    outcome, sleeps = _ingest(test_db_session, fake_google, settings)

    assert outcome.success is False
    assert outcome.retries == 0
    assert sleeps == []
    assert len(fake_google.token_calls) == 1
    assert _search_calls(fake_google) == []


def test_unexpected_resolution_error_marks_record_failed(test_db_session, fake_google, settings, seed_token):
    seed_token()

    async def broken(user_id, customer_id, **kwargs):
        raise SQLAlchemyError("connection lost")

    def ingest(ingestor):
        ingestor.resolver.resolve_manager_for = broken
        return ingestor.ingest_customer(CUSTOMER, "user-1", START, END)

    outcome, sleeps = _run(test_db_session, fake_google, settings, ingest)

    assert outcome.success is False
    assert "connection lost" in outcome.error
    assert outcome.retries == 0
    assert sleeps == []

    record = test_db_session.query(GoogleAdsIngestion).one()
    assert record.status == IngestionStatusEnum.failed
    assert record.completed_at is not None
    assert "connection lost" in record.error_message


def test_failure_logs_mask_ids_from_error_messages(test_db_session, fake_google, settings, seed_token, caplog):
    seed_token()
    fake_google.search_responses[CUSTOMER] = lambda body, headers: httpx.Response(
        400, json={"error": {"message": f"customers/{CUSTOMER} is not enabled"}}
    )

    with caplog.at_level(logging.DEBUG, logger="metricus"):
        outcome, _ = _ingest(test_db_session, fake_google, settings)

    assert CUSTOMER in outcome.error
    ours = "\n".join(r.getMessage() for r in caplog.records if r.name.startswith("metricus"))
    assert "customers/123***890 is not enabled" in ours
    assert CUSTOMER not in ours


def test_search_follows_pagination(test_db_session, fake_google, settings, seed_token):
    seed_token()

    def paged(body, headers):
        if body.get("pageToken") == "page-2":
            return httpx.Response(200, json={"results": [_api_row(campaign_id="43")]})
        return httpx.Response(200, json={"results": [_api_row()], "nextPageToken": "page-2"})

    fake_google.search_responses[CUSTOMER] = paged

    outcome, _ = _ingest(test_db_session, fake_google, settings)

    assert outcome.records_processed == 2
    assert len(_search_calls(fake_google)) == 2


# ============================================================================
# Daily batch
# ============================================================================

def _seed_accounts(seed_token, test_db_session, count=3):
    base = utcnow() - timedelta(days=1)
    for index in range(count):
        token = seed_token(user_id=f"user-{index + 1}", customer_id=f"{index + 1}00000000{index + 1}")
        token.created_at = base + timedelta(seconds=index)
    test_db_session.commit()


def test_connected_accounts_skip_incomplete_tokens(test_db_session, fake_google, settings, seed_token):
    _seed_accounts(seed_token, test_db_session, count=2)
    seed_token(user_id="no-account", customer_id=None)
    seed_token(user_id="no-access", access_token=None)

    accounts, _ = _run(test_db_session, fake_google, settings, lambda ingestor: _async(ingestor.connected_accounts()))

    assert accounts == [("user-1", "1000000001"), ("user-2", "2000000002")]


async def _async(value):
    return value


def test_daily_batch_isolates_account_failures(test_db_session, fake_google, settings, seed_token):
    _seed_accounts(seed_token, test_db_session, count=3)
    seen = []

    async def fake_ingest(customer_id, user_id, start_date, end_date, *, on_not_managed):
        seen.append((user_id, customer_id, start_date, end_date, on_not_managed))
        if user_id == "user-2":
            raise RuntimeError("boom")
        return IngestOutcome(success=True, customer_id=customer_id, inserted=3, updated=1, records_processed=4)

    def batch(ingestor):
        ingestor.ingest_customer = fake_ingest
        return ingestor.run_daily_batch(today=date(2026, 10, 19))

    summary, sleeps = _run(test_db_session, fake_google, settings, batch)

    assert [s[0] for s in seen] == ["user-1", "user-2", "user-3"]
    assert all(s[2:] == (date(2026, 10, 12), date(2026, 10, 19), NotManagedPolicy.proceed) for s in seen)
    assert sleeps == [settings.INGEST_ACCOUNT_PAUSE_SECONDS] * 2

    assert summary.summary_dict() == {
        "total_accounts": 3,
        "successful": 2,
        "failed": 1,
        "total_inserted": 6,
        "total_updated": 2,
        "date_range": "2026-10-12 to 2026-10-19",
    }
    failed = summary.results[1]
    assert failed.success is False
    assert "boom" in failed.error
    assert summary.all_failed is False


def test_daily_batch_runs_real_ingestion_per_account(test_db_session, fake_google, settings, seed_token):
    _seed_accounts(seed_token, test_db_session, count=2)
    fake_google.search_responses["1000000001"] = _respond_with(_api_row())
    fake_google.search_responses["2000000002"] = lambda body, headers: httpx.Response(403, json={})

    summary, _ = _run(
        test_db_session, fake_google, settings,
        lambda ingestor: ingestor.run_daily_batch(today=date(2026, 10, 19)),
    )

    assert (summary.successful, summary.failed) == (1, 1)
    assert [r.to_dict()["success"] for r in summary.results] == [True, False]
    statuses = {r.customer_id: r.status for r in test_db_session.query(GoogleAdsIngestion).all()}
    assert statuses == {"1000000001": IngestionStatusEnum.completed, "2000000002": IngestionStatusEnum.failed}


def test_daily_batch_with_no_accounts(test_db_session, fake_google, settings):
    summary, sleeps = _run(test_db_session, fake_google, settings, lambda ingestor: ingestor.run_daily_batch())

    assert summary.total_accounts == 0
    assert summary.all_failed is False
    assert sleeps == []
