"""ARQ async worker for Meta performance syncs.

WHAT:
    Processes `process_meta_sync_job` jobs enqueued by
    adsync.workers.arq_enqueue.enqueue_meta_sync.

WHY:
    - A 90-day initial sync can take minutes (pagination delays, backoff),
      too long for a request/response cycle
    - Rate-limited runs are re-queued with ARQ's Retry after the wait Meta
      asked for

USAGE:
    # Start worker
    arq adsync.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m adsync.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - adsync/services/meta_sync_service.py
"""

from __future__ import annotations

import logging
import platform
from datetime import datetime, timezone
from typing import Any, Dict

import httpx
from arq import Retry

from adsync.deps import get_settings, get_store
from adsync.services.meta_sync_service import MetaSyncOrchestrator
from adsync.services.sync_errors import MetaSyncError, RateLimitExceeded
from adsync.telemetry import capture_exception, init_sentry
from adsync.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_DEFER_SECONDS = 60


# =============================================================================
# JOBS
# =============================================================================

async def process_meta_sync_job(
    ctx: Dict,
    user_id: str,
    ad_account_id: str,
    force_full_sync: bool = False,
) -> Dict[str, Any]:
    """Run one Meta performance sync.

    Args:
        ctx: ARQ context (store, http_client and job_try are read from it)
        user_id: Owner of the Meta connection
        ad_account_id: Meta ad account id
        force_full_sync: Run the full lookback window

    Returns:
        Dict with success status and the sync summary or error category

    Raises:
        Retry: Meta is throttling the account; the job is deferred
    """
    logger.info("[ARQ] Starting Meta sync for %s (user=%s, force_full_sync=%s)", ad_account_id, user_id, force_full_sync)

    orchestrator = MetaSyncOrchestrator(
        ctx["store"],
        get_settings(),
        http_client=ctx.get("http_client"),
    )

    try:
        summary = await orchestrator.run(user_id, ad_account_id, force_full_sync=force_full_sync)
    except RateLimitExceeded as e:
        job_try = ctx.get("job_try", 1)
        if job_try < WorkerSettings.max_tries:
            defer = int(e.retry_after or DEFAULT_RATE_LIMIT_DEFER_SECONDS)
            logger.warning("[ARQ] Rate limited on %s, retrying in %ds (try %d)", ad_account_id, defer, job_try)
            raise Retry(defer=defer) from e
        return _failure(e)
    except MetaSyncError as e:
        logger.error("[ARQ] Meta sync failed for %s (%s): %s", ad_account_id, e.category, e.message)
        return _failure(e)
    except Exception as e:
        logger.exception("[ARQ] Meta sync job crashed for %s: %s", ad_account_id, e)
        capture_exception(e, extra={
            "operation": "process_meta_sync_job",
            "user_id": user_id,
            "ad_account_id": ad_account_id,
        })
        return {"success": False, "error": str(e), "category": "generic", "retryable": True}

    return {
        "success": True,
        "message": summary.message,
        "count": summary.count,
        "sync_type": summary.sync_type.value,
        "date_range": {
            "start": summary.date_range.start.isoformat(),
            "end": summary.date_range.end.isoformat(),
        },
        "ads_with_activity": summary.ads_with_activity,
        "ads_without_activity": summary.ads_without_activity,
        "dropped_rows": summary.dropped_rows,
    }


def _failure(error: MetaSyncError) -> Dict[str, Any]:
    return {
        "success": False,
        "error": error.to_user_message(),
        "category": error.category,
        "retryable": error.retryable,
    }


# =============================================================================
# LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - shared store and HTTP client for all jobs."""
    init_sentry()
    settings = get_settings()

    ctx["store"] = get_store()
    ctx["http_client"] = httpx.AsyncClient(timeout=settings.META_REQUEST_TIMEOUT_SECONDS)
    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0

    logger.info("[ARQ] Worker starting up on %s (Python %s)", platform.node(), platform.python_version())
    logger.info("[ARQ] Queue: %s, max concurrent jobs: %d", QUEUE_NAME, WorkerSettings.max_jobs)


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - close the HTTP client and log stats."""
    client = ctx.get("http_client")
    if client is not None:
        await client.aclose()

    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))
    logger.info("[ARQ] Worker shutting down: %d jobs processed, uptime %s", ctx.get("jobs_processed", 0), uptime)


async def on_job_end(ctx: Dict) -> None:
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=10: Different accounts sync in parallel; one account never
      runs twice because job ids are per account
    - job_timeout=900: Initial syncs with rate-limit backoff can be slow
    - keep_result=0: A finished job must not keep its id reserved, or the
      next sync for the account would be rejected as a duplicate
    """

    functions = [process_meta_sync_job]

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings()

    max_jobs = 10
    job_timeout = 900
    keep_result = 0
    max_tries = 3
    health_check_interval = 30

    queue_name = QUEUE_NAME
