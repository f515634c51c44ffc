"""Dependency providers and settings management."""

import hmac
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import AsyncGenerator, Dict, List, Optional

import httpx
from fastapi import Depends, Header, HTTPException, status
from jose import JWTError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .security import decode_bearer

logger = logging.getLogger(__name__)


REQUIRED_ENV = (
    "GOOGLE_OAUTH_CLIENT_ID",
    "GOOGLE_OAUTH_CLIENT_SECRET",
    "GOOGLE_OAUTH_REDIRECT_URI",
    "GOOGLE_ADS_DEVELOPER_TOKEN",
    "DATABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "METRICUS_INGEST_KEY",
    "SUPABASE_JWT_SECRET",
    "TOKEN_ENCRYPTION_KEY",
)


class Settings(BaseSettings):
    """Application settings loaded from environment or .env.

    Required values default to None so the process can start and report
    what is missing instead of failing at import.
    """

    GOOGLE_OAUTH_CLIENT_ID: Optional[str] = None
    GOOGLE_OAUTH_CLIENT_SECRET: Optional[str] = None
    GOOGLE_OAUTH_REDIRECT_URI: Optional[str] = None
    GOOGLE_ADS_DEVELOPER_TOKEN: Optional[str] = None
    DATABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    METRICUS_INGEST_KEY: Optional[str] = None
    SUPABASE_JWT_SECRET: Optional[str] = None
    TOKEN_ENCRYPTION_KEY: Optional[str] = None

    GOOGLE_ADS_API_VERSION: str = "v21"
    FRONTEND_URL: str = "http://localhost:3000"
    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"
    RELEASE_VERSION: Optional[str] = None

    INGEST_LOOKBACK_DAYS: int = 7
    INGEST_MAX_RETRIES: int = 3
    INGEST_ACCOUNT_PAUSE_SECONDS: float = 0.5

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    def config_report(self) -> Dict[str, bool]:
        """Which required variables are set. Booleans only, never values."""
        return {name: bool(getattr(self, name)) for name in REQUIRED_ENV}

    def missing_required(self) -> List[str]:
        return [name for name, present in self.config_report().items() if not present]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


class ConfigurationError(Exception):
    """Raised when a request needs configuration that is not present."""

    def __init__(self, missing: List[str], report: Dict[str, bool]):
        super().__init__(f"Missing required configuration: {', '.join(missing)}")
        self.missing = missing
        self.report = report


def require_configured(settings: Settings = Depends(get_settings)) -> Settings:
    """Fail the invocation up front when required variables are missing."""
    missing = settings.missing_required()
    if missing:
        logger.error("[CONFIG] Missing required configuration: %s", ", ".join(missing))
        raise ConfigurationError(missing, settings.config_report())
    return settings


async def get_http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """Yield an outbound HTTP client scoped to one request."""
    async with httpx.AsyncClient(timeout=30.0) as client:
        yield client


# --- Authentication ---------------------------------------------------------

@dataclass(frozen=True)
class Principal:
    """Authenticated caller: an end user (user_id set) or an internal job."""
    user_id: Optional[str] = None
    is_internal: bool = False


def _constant_time_equals(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def get_principal(
    settings: Settings = Depends(require_configured),
    authorization: Optional[str] = Header(default=None),
    x_api_key: Optional[str] = Header(default=None, alias="x-api-key"),
) -> Principal:
    """Resolve the caller from `x-api-key` or `Authorization: Bearer <jwt>`.

    A bearer equal to the service-role key counts as an internal caller.
    """
    if x_api_key is not None:
        if _constant_time_equals(x_api_key, settings.METRICUS_INGEST_KEY):
            return Principal(is_internal=True)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    # Remove optional "Bearer " prefix
    if authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):]
    else:
        token = authorization

    if _constant_time_equals(token, settings.SUPABASE_SERVICE_ROLE_KEY):
        return Principal(is_internal=True)

    try:
        payload = decode_bearer(token, settings.SUPABASE_JWT_SECRET)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return Principal(user_id=str(subject))


def get_current_user_id(principal: Principal = Depends(get_principal)) -> str:
    """Require an end-user bearer and return its user id."""
    if not principal.user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User session required")
    return principal.user_id


def require_internal(principal: Principal = Depends(get_principal)) -> Principal:
    """Require an internal caller (ingest key or service-role bearer)."""
    if not principal.is_internal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Internal API key required")
    return principal


def require_api_key(
    settings: Settings = Depends(require_configured),
    x_api_key: Optional[str] = Header(default=None, alias="x-api-key"),
) -> Principal:
    """Require the internal ingestion key in `x-api-key`."""
    if not _constant_time_equals(x_api_key, settings.METRICUS_INGEST_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")
    return Principal(is_internal=True)
