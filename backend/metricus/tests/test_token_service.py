"""Tests for the Google token service.

WHAT:
    Expiry-buffer decisions, refresh persistence, refresh failures and the
    encrypted upsert used by the OAuth callback.

REFERENCES:
    metricus/services/token_service.py
"""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs

import pytest

from metricus.models import GoogleToken, utcnow
from metricus.security import decrypt_secret
from metricus.services.token_service import (
    TokenNotFoundError,
    TokenRefreshError,
    get_valid_access_token,
    store_google_token,
)

from .conftest import FRESH_ACCESS_TOKEN, STORED_ACCESS_TOKEN


def _get_token(db, fake_google, settings, user_id="user-1", **kwargs):
    async def run():
        async with fake_google.client() as http:
            return await get_valid_access_token(db, http, settings, user_id, **kwargs)

    return asyncio.run(run())


def test_valid_token_is_returned_without_network_twice(test_db_session, fake_google, settings, seed_token):
    seed_token(expires_in=timedelta(hours=1))

    first = _get_token(test_db_session, fake_google, settings)
    second = _get_token(test_db_session, fake_google, settings)

    assert first == second == STORED_ACCESS_TOKEN
    assert fake_google.token_calls == []


def test_token_expiring_in_four_minutes_is_refreshed(test_db_session, fake_google, settings, seed_token):
    now = utcnow()
    seed_token(expires_in=timedelta(minutes=4), now=now)

    token = _get_token(test_db_session, fake_google, settings, now=now)

    assert token == FRESH_ACCESS_TOKEN
    assert len(fake_google.token_calls) == 1


def test_token_expiring_in_six_minutes_is_not_refreshed(test_db_session, fake_google, settings, seed_token):
    now = utcnow()
    seed_token(expires_in=timedelta(minutes=6), now=now)

    token = _get_token(test_db_session, fake_google, settings, now=now)

    assert token == STORED_ACCESS_TOKEN
    assert fake_google.token_calls == []


def test_refresh_persists_new_token_and_expiry(test_db_session, fake_google, settings, seed_token):
    now = utcnow()
    seed_token(expires_in=timedelta(minutes=-10), now=now)
    fake_google.token_responses.append((200, {"access_token": "brand-new", "expires_in": 1800}))

    assert _get_token(test_db_session, fake_google, settings, now=now) == "brand-new"

    stored = test_db_session.query(GoogleToken).one()
    assert stored.token_expiry == now + timedelta(seconds=1800)
    assert decrypt_secret(stored.access_token_enc, context="test") == "brand-new"

    form = parse_qs(fake_google.token_calls[0].content.decode())
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == ["stored-refresh-token"]
    assert form["client_id"] == [settings.GOOGLE_OAUTH_CLIENT_ID]

    # Second call within the new lifetime uses the persisted token
    assert _get_token(test_db_session, fake_google, settings, now=now) == "brand-new"
    assert len(fake_google.token_calls) == 1


def test_refresh_failure_carries_provider_body(test_db_session, fake_google, settings, seed_token):
    seed_token(expires_in=timedelta(minutes=-1))
    fake_google.token_responses.append((400, {"error": "invalid_grant"}))

    with pytest.raises(TokenRefreshError) as excinfo:
        _get_token(test_db_session, fake_google, settings)

    assert excinfo.value.status_code == 400
    assert "invalid_grant" in excinfo.value.body


def test_missing_token_raises_not_found(test_db_session, fake_google, settings):
    with pytest.raises(TokenNotFoundError):
        _get_token(test_db_session, fake_google, settings, user_id="nobody")


def test_missing_access_token_forces_refresh(test_db_session, fake_google, settings, seed_token):
    seed_token(access_token=None)

    assert _get_token(test_db_session, fake_google, settings) == FRESH_ACCESS_TOKEN


def test_store_google_token_upserts_and_keeps_refresh_token(test_db_session):
    expires = utcnow() + timedelta(hours=1)
    store_google_token(
        test_db_session, "user-1",
        access_token="a1", refresh_token="r1", expires_at=expires,
        customer_id="123-456-7890",
    )
    # Repeat consent: Google omits refresh_token
    store_google_token(
        test_db_session, "user-1",
        access_token="a2", refresh_token=None, expires_at=expires,
        login_customer_id="999-888-7777",
    )

    rows = test_db_session.query(GoogleToken).all()
    assert len(rows) == 1
    token = rows[0]
    assert token.access_token_enc != "a2"
    assert decrypt_secret(token.access_token_enc, context="test") == "a2"
    assert decrypt_secret(token.refresh_token_enc, context="test") == "r1"
    assert token.customer_id == "1234567890"
    assert token.login_customer_id == "9998887777"


def test_store_google_token_requires_refresh_token_for_new_rows(test_db_session):
    with pytest.raises(ValueError):
        store_google_token(
            test_db_session, "user-2",
            access_token="a1", refresh_token=None, expires_at=utcnow(),
        )
