"""
Windowed, idempotent persistence of performance records.

WHAT: Replaces every stored record of a date window with a new record set,
      then advances the account's sync state.
WHY:  Delete-then-insert makes reruns converge: syncing the same upstream
      data twice leaves the same stored set.

Failure handling:
    - Chunks are inserted concurrently (bounded by a semaphore). Any chunk
      failure fails the whole write.
    - After a failed write the window is deleted again so no partial set
      stays behind, and WriteFailure is raised.
    - Sync state is only advanced after every chunk landed. A failed run
      leaves last_sync_at untouched, so the next run re-covers the gap.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from adsync.services.storage import PerformanceStore
from adsync.services.sync_errors import WriteFailure
from adsync.services.sync_types import DateWindow, PerformanceRecord, SyncMode, SyncState

logger = logging.getLogger(__name__)

DEFAULT_WRITE_BATCH_SIZE = 500
DEFAULT_WRITE_CONCURRENCY = 4


@dataclass(frozen=True)
class WriteResult:
    written: int
    success: bool
    deleted: int = 0
    state: Optional[SyncState] = None


def chunked(records: Sequence[PerformanceRecord], size: int) -> List[Sequence[PerformanceRecord]]:
    if size <= 0:
        raise ValueError("Chunk size must be positive")
    return [records[i:i + size] for i in range(0, len(records), size)]


class SyncWriter:
    def __init__(
        self,
        store: PerformanceStore,
        batch_size: int = DEFAULT_WRITE_BATCH_SIZE,
        concurrency: int = DEFAULT_WRITE_CONCURRENCY,
    ):
        self.store = store
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)

    async def persist(
        self,
        user_id: str,
        account_id: str,
        window: DateWindow,
        records: Sequence[PerformanceRecord],
        mode: SyncMode,
        now: Optional[datetime] = None,
    ) -> WriteResult:
        """Replace the window's records and advance sync state.

        Raises:
            WriteFailure: Delete or any chunk insert failed. The window is left
                empty and sync state is unchanged.
        """
        try:
            deleted = await self.store.delete_window(user_id, account_id, window)
        except Exception as e:
            logger.error("[SYNC_WRITER] Failed to clear window for %s: %s", account_id, e)
            raise WriteFailure(f"Failed to clear existing records: {e}", account_id=account_id) from e

        written = await self._insert_all(user_id, account_id, window, records)

        previous = await self.store.get_sync_state(user_id, account_id)
        already_complete = bool(previous and previous.initial_sync_complete)
        state = SyncState(
            user_id=user_id,
            ad_account_id=account_id,
            last_sync_at=now or datetime.utcnow(),
            initial_sync_complete=already_complete or (mode == SyncMode.initial and written > 0),
        )
        await self.store.save_sync_state(state)

        logger.info(
            "[SYNC_WRITER] Replaced %d rows with %d for %s (%s..%s), initial_sync_complete=%s",
            deleted,
            written,
            account_id,
            window.start,
            window.end,
            state.initial_sync_complete,
        )
        return WriteResult(written=written, success=True, deleted=deleted, state=state)

    async def _insert_all(
        self,
        user_id: str,
        account_id: str,
        window: DateWindow,
        records: Sequence[PerformanceRecord],
    ) -> int:
        chunks = chunked(list(records), self.batch_size)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def insert_chunk(chunk: Sequence[PerformanceRecord]) -> int:
            async with semaphore:
                return await self.store.insert_records(chunk)

        outcomes = await asyncio.gather(
            *(insert_chunk(chunk) for chunk in chunks),
            return_exceptions=True,
        )
        failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if not failures:
            return sum(outcomes)

        logger.error(
            "[SYNC_WRITER] %d of %d chunks failed for %s, clearing window: %s",
            len(failures),
            len(chunks),
            account_id,
            failures[0],
        )
        try:
            await self.store.delete_window(user_id, account_id, window)
        except Exception as cleanup_error:
            logger.error("[SYNC_WRITER] Compensating delete failed for %s: %s", account_id, cleanup_error)

        raise WriteFailure(
            f"{len(failures)} of {len(chunks)} insert batches failed: {failures[0]}",
            account_id=account_id,
        ) from failures[0]
