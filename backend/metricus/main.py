"""FastAPI application entrypoint.

Configures logging, Sentry, CORS, includes routers, renders configuration
errors as a diagnostic report, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import ConfigurationError, get_settings  # noqa: E402
from .routers import accounts as accounts_router  # noqa: E402
from .routers import diag as diag_router  # noqa: E402
from .routers import google_oauth as google_oauth_router  # noqa: E402
from .routers import ingest as ingest_router  # noqa: E402
from .telemetry import init_sentry  # noqa: E402

# Import models so Alembic can discover metadata
from . import models  # noqa: F401,E402


def create_app() -> FastAPI:
    """Build the application. Never fails on missing configuration."""
    settings = get_settings()
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT, release=settings.RELEASE_VERSION)

    app = FastAPI(title="Metricus Google Ads API", version="0.1.0")

    origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        return JSONResponse(
            status_code=500,
            content={"error": "configuration_incomplete", "env": exc.report},
        )

    @app.get("/health", tags=["Health"])
    def health():
        return {"status": "ok"}

    app.include_router(ingest_router.router)
    app.include_router(diag_router.router)
    app.include_router(accounts_router.router)
    app.include_router(google_oauth_router.router)

    missing = settings.missing_required()
    if missing:
        logger.warning("[CONFIG] Starting with incomplete configuration, missing: %s", ", ".join(missing))
    return app


app = create_app()
