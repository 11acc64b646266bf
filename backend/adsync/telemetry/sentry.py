"""
Sentry Error Tracking
=====================

Centralized error tracking for the API and the arq worker.

Related files:
- adsync/main.py: Initializes Sentry on app startup
- adsync/workers/arq_worker.py: Initializes Sentry on worker startup
- adsync/routers/meta_sync.py: Captures unexpected sync failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (required for Sentry to work)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.arq import ArqIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from adsync.deps import get_settings

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry() -> bool:
    """
    Initialize the Sentry SDK.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.
    """
    global _initialized

    settings = get_settings()
    if not settings.SENTRY_DSN:
        return False

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                ArqIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False

    _initialized = True
    logger.debug("[SENTRY] Initialized for %s environment", settings.ENVIRONMENT)
    return True


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Report a handled exception to Sentry with extra context.

    Example:
        try:
            await orchestrator.run(user_id, account_id)
        except Exception as e:
            capture_exception(e, extra={"ad_account_id": account_id})
            raise
    """
    if not _initialized:
        logger.error("Exception (Sentry disabled): %s", exception)
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
