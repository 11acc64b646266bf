"""Meta performance sync orchestration.

WHAT:
    MetaSyncOrchestrator.run() executes one sync of one ad account:
        1. Load the Meta connection (token + conversion event values)
        2. Decide initial vs append mode and the date window
        3. Fetch ad-level daily insights for the window (paginated)
        4. Fetch campaigns / ad sets / ads (batch endpoint)
        5. Reconcile rows with entities (drop deleted campaigns, fill gaps)
        6. Materialize canonical records (+ zero-activity ads)
        7. Replace the window in storage and advance sync state

WHY:
    - HTTP endpoints and the arq worker share the same logic
    - Every collaborator (store, HTTP client, sleep, clock) is injected so the
      full run is testable without network or a real database

ERRORS:
    Raises adsync.services.sync_errors exceptions only. Nothing is written
    unless both fetches produced data that is safe to write.

REFERENCES:
    - adsync/routers/meta_sync.py (HTTP entrypoint)
    - adsync/workers/arq_worker.py (background entrypoint)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

import httpx

from adsync.deps import Settings, get_settings
from adsync.services.hierarchy import reconcile
from adsync.services.meta_batch import MetaBatchCoordinator
from adsync.services.meta_graph_client import FailureKind, MetaGraphClient, Sleep
from adsync.services.record_materializer import materialize_all, normalize_event_values
from adsync.services.storage import PerformanceStore
from adsync.services.sync_errors import (
    ConnectionNotFoundError,
    RateLimitExceeded,
    TokenExpiredError,
    TransientFetchError,
    TruncatedFetchError,
)
from adsync.services.sync_mode import SyncModeSelector
from adsync.services.sync_types import DateWindow, InsightRow, MetaConnectionInfo, SyncMode
from adsync.services.sync_writer import SyncWriter

logger = logging.getLogger(__name__)

ACCOUNT_PREFIX = "act_"

MESSAGE_COMPLETE = "Sync complete"
MESSAGE_NO_ADS = "No ads found in this account"


@dataclass(frozen=True)
class SyncSummary:
    message: str
    count: int
    sync_type: SyncMode
    date_range: DateWindow
    ads_with_activity: int = 0
    ads_without_activity: int = 0
    dropped_rows: int = 0


def normalize_account_id(ad_account_id: str) -> str:
    """'123' and 'act_123' both become 'act_123'."""
    account_id = (ad_account_id or "").strip()
    if not account_id:
        raise ValueError("ad_account_id is required")
    if account_id.startswith(ACCOUNT_PREFIX):
        return account_id
    return f"{ACCOUNT_PREFIX}{account_id}"


class MetaSyncOrchestrator:
    """Runs one performance sync for one (user, ad account)."""

    def __init__(
        self,
        store: PerformanceStore,
        settings: Optional[Settings] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.sleep = sleep
        self.clock = clock
        self.selector = SyncModeSelector(
            store,
            lookback_days=self.settings.META_SYNC_LOOKBACK_DAYS,
            buffer_days=self.settings.META_SYNC_APPEND_BUFFER_DAYS,
        )
        self.writer = SyncWriter(
            store,
            batch_size=self.settings.META_SYNC_WRITE_BATCH_SIZE,
            concurrency=self.settings.META_SYNC_WRITE_CONCURRENCY,
        )

    def _graph_client(self, access_token: str) -> MetaGraphClient:
        s = self.settings
        return MetaGraphClient(
            access_token,
            self.http_client,
            api_version=s.META_GRAPH_API_VERSION,
            request_timeout=s.META_REQUEST_TIMEOUT_SECONDS,
            max_rate_limit_retries=s.META_MAX_RATE_LIMIT_RETRIES,
            rate_limit_base_delay=s.META_RATE_LIMIT_BASE_DELAY_SECONDS,
            generic_retry_delay=s.META_GENERIC_RETRY_DELAY_SECONDS,
            page_delay=s.META_PAGE_DELAY_SECONDS,
            sleep=self.sleep,
        )

    async def run(
        self,
        user_id: str,
        ad_account_id: str,
        force_full_sync: bool = False,
    ) -> SyncSummary:
        """Sync one ad account.

        Args:
            user_id: Owner of the Meta connection
            ad_account_id: Meta ad account id, with or without the act_ prefix
            force_full_sync: Ignore sync state and run the full lookback window

        Returns:
            SyncSummary with the number of records written

        Raises:
            ConnectionNotFoundError / TokenExpiredError: User must reconnect Meta
            RateLimitExceeded: Meta kept throttling after every retry
            TransientFetchError: Insights fetch failed after retries
            TruncatedFetchError: Insights exceeded META_MAX_PAGES
            IncompleteEntityDataError: Entity data unsafe to write against
            WriteFailure: Storage rejected a chunk (window cleared, state unchanged)
        """
        started = time.monotonic()
        account_id = normalize_account_id(ad_account_id)
        now = self.clock()

        connection = await self._load_connection(user_id, account_id, now)
        decision = await self.selector.decide_mode(
            user_id, account_id, force_full_sync=force_full_sync, today=now.date()
        )
        window = decision.window

        async with self._graph_client(connection.access_token) as client:
            rows = await self._fetch_rows(client, account_id, window)
            coordinator = MetaBatchCoordinator(
                client,
                max_pages=self.settings.META_MAX_PAGES,
                max_generic_retries=self.settings.META_MAX_GENERIC_RETRIES,
                inter_request_delay=self.settings.META_BATCH_FALLBACK_DELAY_SECONDS,
            )
            entities = await coordinator.fetch_entity_hierarchy(account_id)

        reconciled = reconcile(
            rows,
            entities.campaigns,
            entities.adsets,
            entities.ads,
            entities.collection_success,
            account_id=account_id,
        )
        materialized = materialize_all(
            reconciled.active_rows,
            reconciled.hierarchy,
            window,
            normalize_event_values(connection.event_values),
            user_id=user_id,
            account_id=account_id,
            synced_at=now,
        )

        if materialized.count == 0:
            logger.info("[META_SYNC] No ads found for %s, store left untouched", account_id)
            return SyncSummary(
                message=MESSAGE_NO_ADS,
                count=0,
                sync_type=decision.mode,
                date_range=window,
                dropped_rows=len(reconciled.dropped_rows),
            )

        result = await self.writer.persist(
            user_id, account_id, window, materialized.records, decision.mode, now=now
        )

        logger.info(
            "[META_SYNC] %s sync complete for %s: %d records (%d active ads, %d idle) in %.1fs",
            decision.mode.value,
            account_id,
            result.written,
            materialized.ads_with_activity,
            materialized.ads_without_activity,
            time.monotonic() - started,
        )
        return SyncSummary(
            message=MESSAGE_COMPLETE,
            count=result.written,
            sync_type=decision.mode,
            date_range=window,
            ads_with_activity=materialized.ads_with_activity,
            ads_without_activity=materialized.ads_without_activity,
            dropped_rows=len(reconciled.dropped_rows),
        )

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _load_connection(self, user_id: str, account_id: str, now: datetime) -> MetaConnectionInfo:
        connection = await self.store.get_connection(user_id)
        if connection is None:
            raise ConnectionNotFoundError("Meta account not connected", account_id=account_id)
        if connection.token_expires_at is not None and connection.token_expires_at <= now:
            logger.warning("[META_SYNC] Token for user %s expired at %s", user_id, connection.token_expires_at)
            raise TokenExpiredError(
                "Meta token expired. Please reconnect your account.",
                account_id=account_id,
            )
        return connection

    async def _fetch_rows(
        self,
        client: MetaGraphClient,
        account_id: str,
        window: DateWindow,
    ) -> List[InsightRow]:
        """All insight rows for the window. Partial results are never returned."""
        result = await client.fetch_all(
            client.insights_url(account_id, window),
            max_pages=self.settings.META_MAX_PAGES,
            max_generic_retries=self.settings.META_MAX_GENERIC_RETRIES,
        )

        if not result.success:
            logger.error(
                "[META_SYNC] Insights fetch failed for %s after %d pages (%s): %s",
                account_id,
                result.pages,
                result.failure.value if result.failure else "unknown",
                result.error,
            )
            if result.failure == FailureKind.auth:
                raise TokenExpiredError(
                    "Meta token expired. Please reconnect your account.",
                    account_id=account_id,
                )
            if result.failure == FailureKind.rate_limited:
                raise RateLimitExceeded(
                    "Meta API rate limit exceeded while fetching insights",
                    retry_after=result.retry_after,
                    account_id=account_id,
                )
            raise TransientFetchError(
                f"Failed to fetch insights from Meta: {result.error}",
                account_id=account_id,
            )

        if result.truncated:
            raise TruncatedFetchError(
                f"Insights for {window.start}..{window.end} exceed {self.settings.META_MAX_PAGES} pages",
                account_id=account_id,
            )

        rows: List[InsightRow] = []
        for record in result.records:
            if not record.get("ad_id") or not record.get("date_start"):
                logger.debug("[META_SYNC] Skipping insight row without ad_id/date_start")
                continue
            rows.append(InsightRow.from_api(record))

        logger.info("[META_SYNC] Fetched %d insight rows for %s (%d pages)", len(rows), account_id, result.pages)
        return rows
