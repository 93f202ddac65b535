"""
Sentry Error Tracking
=====================

Error tracking for the API process and the arq worker.

Related files:
- shopsync/main.py: Initializes Sentry on app startup
- shopsync/workers/arq_worker.py: Initializes Sentry on worker startup
- shopsync/services/shopify_sync_service.py: Run-level sync failures are captured

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry(dsn: Optional[str] = None) -> bool:
    """
    Initialize Sentry SDK.

    Returns:
        True if Sentry was initialized, False when no DSN is configured.
    """
    global _initialized

    dsn = dsn or os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            LoggingIntegration(
                level=logging.INFO,        # Capture INFO+ as breadcrumbs
                event_level=logging.ERROR,  # Send ERROR+ as events
            ),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,
        release=os.environ.get("RELEASE_VERSION"),
    )
    _initialized = True

    logger.debug(f"[SENTRY] Initialized for {environment} environment")
    return True


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Capture a handled exception (e.g. a failed sync run that was persisted to
    the ledger and returned to the caller instead of raised).

    Args:
        exception: The exception to capture
        extra: Additional context (store_id, data_type, ...)
    """
    if not _initialized:
        logger.error(f"Exception (Sentry disabled): {exception}")
        return

    sentry_sdk.capture_exception(exception, extras=extra or {})


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Capture a noteworthy non-exception event (e.g. circuit breaker opened)."""
    if not _initialized:
        logger.log(
            logging.getLevelName(level.upper()),
            f"Message (Sentry disabled): {message}"
        )
        return

    sentry_sdk.capture_message(message, level=level, extras=extra or {})
