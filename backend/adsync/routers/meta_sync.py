"""Meta performance sync endpoints.

WHAT:
    Thin HTTP wrappers around MetaSyncOrchestrator and the ARQ queue.

WHY:
    - Routers handle request parsing and error mapping only
    - Sync logic is shared with the background worker

ERROR MAPPING:
    rate_limited     -> 429 (+ Retry-After)
    incomplete_data  -> 503
    token_expired    -> 401
    anything else    -> 500
    Body (under FastAPI's `detail`): {error, category, retryable}

REFERENCES:
    - adsync/services/meta_sync_service.py
    - adsync/workers/arq_enqueue.py
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from arq.connections import ArqRedis
from fastapi import APIRouter, Depends, HTTPException, Query, status

from adsync.deps import get_store
from adsync.schemas import (
    DateRange,
    SyncEnqueueResponse,
    SyncErrorResponse,
    SyncRequest,
    SyncResponse,
    SyncStatusResponse,
)
from adsync.services.meta_sync_service import MetaSyncOrchestrator, normalize_account_id
from adsync.services.storage import PerformanceStore
from adsync.services.sync_errors import (
    CATEGORY_GENERIC,
    CATEGORY_INCOMPLETE_DATA,
    CATEGORY_RATE_LIMITED,
    CATEGORY_TOKEN_EXPIRED,
    MetaSyncError,
    RateLimitExceeded,
)
from adsync.telemetry import capture_exception
from adsync.workers.arq_enqueue import enqueue_meta_sync, get_arq_pool

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/meta/sync", tags=["Meta Sync"])

STATUS_BY_CATEGORY: Dict[str, int] = {
    CATEGORY_RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    CATEGORY_INCOMPLETE_DATA: status.HTTP_503_SERVICE_UNAVAILABLE,
    CATEGORY_TOKEN_EXPIRED: status.HTTP_401_UNAUTHORIZED,
}


def get_orchestrator(store: PerformanceStore = Depends(get_store)) -> MetaSyncOrchestrator:
    return MetaSyncOrchestrator(store)


def sync_http_error(error: MetaSyncError) -> HTTPException:
    """Translate a sync error into the HTTP response the dashboard expects."""
    headers: Optional[Dict[str, str]] = None
    if isinstance(error, RateLimitExceeded) and error.retry_after:
        headers = {"Retry-After": str(int(error.retry_after))}

    body = SyncErrorResponse(
        error=error.to_user_message(),
        category=error.category,
        retryable=error.retryable,
    )
    return HTTPException(
        status_code=STATUS_BY_CATEGORY.get(error.category, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=body.model_dump(),
        headers=headers,
    )


@router.post("", response_model=SyncResponse)
async def sync_meta_performance(
    request: SyncRequest,
    orchestrator: MetaSyncOrchestrator = Depends(get_orchestrator),
) -> SyncResponse:
    """Run a Meta performance sync for one ad account and wait for it."""
    logger.info(
        "[META_SYNC] HTTP sync requested: user=%s account=%s force_full_sync=%s",
        request.user_id,
        request.ad_account_id,
        request.force_full_sync,
    )
    try:
        account_id = normalize_account_id(request.ad_account_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        summary = await orchestrator.run(
            request.user_id,
            account_id,
            force_full_sync=request.force_full_sync,
        )
    except MetaSyncError as e:
        logger.warning("[META_SYNC] Sync failed (%s): %s", e.category, e.message)
        raise sync_http_error(e)
    except Exception as e:
        logger.exception("[META_SYNC] Unexpected sync failure: %s", e)
        capture_exception(e, extra={
            "operation": "sync_meta_performance",
            "user_id": request.user_id,
            "ad_account_id": request.ad_account_id,
        })
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=SyncErrorResponse(
                error="Sync failed",
                category=CATEGORY_GENERIC,
                retryable=True,
            ).model_dump(),
        )

    return SyncResponse(
        message=summary.message,
        count=summary.count,
        sync_type=summary.sync_type,
        date_range=DateRange(start=summary.date_range.start, end=summary.date_range.end),
        ads_with_activity=summary.ads_with_activity,
        ads_without_activity=summary.ads_without_activity,
        dropped_rows=summary.dropped_rows,
    )


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    user_id: str = Query(...),
    ad_account_id: str = Query(...),
    store: PerformanceStore = Depends(get_store),
) -> SyncStatusResponse:
    """Persisted sync state for one ad account."""
    try:
        account_id = normalize_account_id(ad_account_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    state = await store.get_sync_state(user_id, account_id)
    record_count = await store.count_records(user_id, account_id)

    if state is None:
        return SyncStatusResponse(user_id=user_id, ad_account_id=account_id, record_count=record_count)

    return SyncStatusResponse(
        user_id=user_id,
        ad_account_id=account_id,
        last_sync_at=state.last_sync_at,
        initial_sync_complete=state.initial_sync_complete,
        record_count=record_count,
    )


@router.post("/enqueue", response_model=SyncEnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_sync(
    request: SyncRequest,
    pool: ArqRedis = Depends(get_arq_pool),
) -> SyncEnqueueResponse:
    """Queue a background sync. Rejected (enqueued=False) while one is queued or running."""
    try:
        result = await enqueue_meta_sync(
            request.user_id,
            request.ad_account_id,
            force_full_sync=request.force_full_sync,
            pool=pool,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return SyncEnqueueResponse(**result)
