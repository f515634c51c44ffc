"""Pytest configuration for metricus integration tests

WHAT: Shared fixtures for service and HTTP endpoint tests
WHY: Consistent in-memory database, a fake Google (OAuth + Ads REST) behind
     httpx.MockTransport, and auth helpers
REFERENCES:
    - metricus/main.py: FastAPI application
    - metricus/database.py: get_db / get_db_if_configured
    - metricus/deps.py: Settings, get_http_client
"""

import json
import os
from datetime import timedelta
from typing import Callable, Dict, Generator, List, Optional, Union

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before anything reads settings
os.environ.setdefault("GOOGLE_OAUTH_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_OAUTH_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("GOOGLE_OAUTH_REDIRECT_URI", "http://testserver/auth/google/callback")
os.environ.setdefault("GOOGLE_ADS_DEVELOPER_TOKEN", "test-dev-token")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ.setdefault("METRICUS_INGEST_KEY", "test-ingest-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")
# Must be URL-safe base64-encoded 32-byte string (Fernet key)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")

from metricus.deps import get_settings  # noqa: E402
from metricus.models import Base, GoogleToken, utcnow  # noqa: E402
from metricus.security import create_bearer, encrypt_secret  # noqa: E402

get_settings.cache_clear()

STORED_ACCESS_TOKEN = "stored-access-token"
FRESH_ACCESS_TOKEN = "fresh-access-token"


# ============================================================================
# Fake Google (OAuth token endpoint + Google Ads REST)
# ============================================================================

class FakeGoogle:
    """Programmable stand-in for oauth2.googleapis.com and googleads.googleapis.com.

    - token_responses: queue of (status, json) for the token endpoint
    - managed: {manager_id: {client ids}} answering customer_client probes
    - probe_errors: {manager_id: status} failing every customer_client probe,
      or {manager_id: [status, ...]} failing one probe per queued status
    - search_responses: {customer_id: callable(body, headers) -> httpx.Response}
    - accessible: ids returned by listAccessibleCustomers
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.token_responses: List[tuple] = []
        self.managed: Dict[str, set] = {}
        self.search_responses: Dict[str, Callable] = {}
        self.accessible: List[str] = []
        self.customer_details: Dict[str, dict] = {}
        self.probe_errors: Dict[str, Union[int, List[int]]] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.host == "oauth2.googleapis.com":
            if self.token_responses:
                status, payload = self.token_responses.pop(0)
            else:
                status, payload = 200, {"access_token": FRESH_ACCESS_TOKEN, "expires_in": 3599}
            return httpx.Response(status, json=payload)

        path = request.url.path
        if path.endswith("customers:listAccessibleCustomers"):
            return httpx.Response(200, json={"resourceNames": [f"customers/{cid}" for cid in self.accessible]})

        if path.endswith("/googleAds:search"):
            customer_id = path.split("/")[-2]
            body = json.loads(request.content or b"{}")
            query = body.get("query", "")

            if "FROM customer_client" in query:
                failure = self.probe_errors.get(customer_id)
                if isinstance(failure, list):
                    failure = failure.pop(0) if failure else None
                if failure is not None:
                    return httpx.Response(failure, json={"error": {"message": f"customers/{customer_id} denied"}})
                target = query.split("customer_client.id = ")[1].split()[0]
                if target in self.managed.get(customer_id, set()):
                    return httpx.Response(200, json={"results": [{"customerClient": {"clientCustomer": f"customers/{target}"}}]})
                return httpx.Response(200, json={})

            if customer_id in self.search_responses:
                return self.search_responses[customer_id](body, request.headers)

            if "FROM customer " in query and customer_id in self.customer_details:
                return httpx.Response(200, json={"results": [{"customer": self.customer_details[customer_id]}]})

            return httpx.Response(200, json={"results": []})

        return httpx.Response(404, json={"error": {"message": "not found"}})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def token_calls(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == "oauth2.googleapis.com"]

    @property
    def ads_calls(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == "googleads.googleapis.com"]

    def probe_calls(self) -> List[httpx.Request]:
        return [r for r in self.ads_calls if b"FROM customer_client" in r.content]


@pytest.fixture
def fake_google() -> FakeGoogle:
    return FakeGoogle()


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def seed_token(test_db_session) -> Callable[..., GoogleToken]:
    """Insert a GoogleToken row; expiry is relative to now."""

    def _seed(
        user_id: str = "user-1",
        *,
        company_id: Optional[str] = None,
        customer_id: Optional[str] = "1234567890",
        login_customer_id: Optional[str] = None,
        expires_in: timedelta = timedelta(hours=1),
        access_token: Optional[str] = STORED_ACCESS_TOKEN,
        now=None,
    ) -> GoogleToken:
        now = now or utcnow()
        token = GoogleToken(
            user_id=user_id,
            company_id=company_id,
            customer_id=customer_id,
            login_customer_id=login_customer_id,
            access_token_enc=encrypt_secret(access_token, context="test") if access_token else None,
            refresh_token_enc=encrypt_secret("stored-refresh-token", context="test"),
            token_expiry=now + expires_in,
        )
        test_db_session.add(token)
        test_db_session.commit()
        return token

    return _seed


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, fake_google):
    """Create FastAPI test application with DB and outbound HTTP overridden."""
    from metricus.database import get_db, get_db_if_configured
    from metricus.deps import get_http_client
    from metricus.main import create_app

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    async def override_get_http_client():
        async with fake_google.client() as http:
            yield http

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_db_if_configured] = override_get_db
    test_app.dependency_overrides[get_http_client] = override_get_http_client
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Authentication Fixtures
# ============================================================================

def bearer_headers(user_id: str = "user-1") -> Dict[str, str]:
    token = create_bearer(user_id, os.environ["SUPABASE_JWT_SECRET"])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    """Standard end-user bearer headers for user-1."""
    return bearer_headers("user-1")


@pytest.fixture
def internal_headers() -> Dict[str, str]:
    return {"x-api-key": os.environ["METRICUS_INGEST_KEY"]}


@pytest.fixture
def bearer_for() -> Callable[[str], Dict[str, str]]:
    """Bearer headers for an arbitrary user id."""
    return bearer_headers
