"""
Sentry Error Tracking
=====================

Centralized error tracking for the ingestion backend.

Related files:
- metricus/main.py: Initializes Sentry on app creation
- metricus/services/metrics_ingestor.py: Reports failed ingestions

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release tag set by CI/CD
"""

from __future__ import annotations

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry(dsn: Optional[str], environment: str = "development", release: Optional[str] = None) -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or init failed.
    """
    global _initialized

    if not dsn:
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Customer ids and tokens must never leave the process unmasked
            send_default_pii=False,
            release=release,
        )
        _initialized = True
        logger.info("[SENTRY] Initialized for %s environment", environment)
        return True

    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Manually capture a handled exception.

    Example:
        result = await with_backoff(operation)
        if not result.success:
            capture_exception(result.error, extra={"customer_id": mask_customer_id(cid)})
    """
    if not _initialized:
        logger.debug("Exception (Sentry disabled): %s", exception)
        return

    try:
        sentry_sdk.capture_exception(exception, extras=extra or {})
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Capture a non-exception event (e.g. a daily batch where every account failed)."""
    if not _initialized:
        logger.log(logging.getLevelName(level.upper()), "Message (Sentry disabled): %s", message)
        return

    try:
        sentry_sdk.capture_message(message, level=level, extras=extra or {})
    except Exception as e:
        logger.error("[SENTRY] Failed to capture message: %s", e)
