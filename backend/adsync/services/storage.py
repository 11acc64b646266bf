"""Storage port for the sync engine.

WHAT:
    - PerformanceStore: async interface the selector, writer and orchestrator
      depend on.
    - SqlPerformanceStore: SQLAlchemy implementation. Every call runs in a
      worker thread (`asyncio.to_thread`) with its own session, so concurrent
      chunk inserts never share a Session.

WHY:
    Injecting the store (instead of importing a global session) lets unit
    tests run the whole engine against an in-memory fake.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from adsync.models import AdPerformance, MetaConnection, MetaSyncState
from adsync.services.sync_types import DateWindow, MetaConnectionInfo, PerformanceRecord, SyncState

logger = logging.getLogger(__name__)


class PerformanceStore(ABC):
    """Durable store for performance records, sync state and connections."""

    @abstractmethod
    async def count_records(self, user_id: str, account_id: str) -> int:
        """Number of stored records for the account."""

    @abstractmethod
    async def delete_window(self, user_id: str, account_id: str, window: DateWindow) -> int:
        """Delete records whose date span overlaps `window`. Returns rows deleted.

        Daily rows match on date_start. Zero-activity rows span the window they
        were written for, so the next overlapping window replaces them.
        """

    @abstractmethod
    async def insert_records(self, records: Sequence[PerformanceRecord]) -> int:
        """Insert one chunk of records. Raises on any failure (nothing from the chunk is kept)."""

    @abstractmethod
    async def list_records(
        self,
        user_id: str,
        account_id: str,
        window: Optional[DateWindow] = None,
    ) -> List[PerformanceRecord]:
        """Stored records for the account, optionally limited to a window."""

    @abstractmethod
    async def get_sync_state(self, user_id: str, account_id: str) -> Optional[SyncState]:
        ...

    @abstractmethod
    async def save_sync_state(self, state: SyncState) -> None:
        ...

    @abstractmethod
    async def get_connection(self, user_id: str) -> Optional[MetaConnectionInfo]:
        ...


class SqlPerformanceStore(PerformanceStore):
    """SQLAlchemy-backed store. One session per call, run off the event loop."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def count_records(self, user_id: str, account_id: str) -> int:
        return await asyncio.to_thread(self._count_records, user_id, account_id)

    async def delete_window(self, user_id: str, account_id: str, window: DateWindow) -> int:
        return await asyncio.to_thread(self._delete_window, user_id, account_id, window)

    async def insert_records(self, records: Sequence[PerformanceRecord]) -> int:
        return await asyncio.to_thread(self._insert_records, list(records))

    async def list_records(
        self,
        user_id: str,
        account_id: str,
        window: Optional[DateWindow] = None,
    ) -> List[PerformanceRecord]:
        return await asyncio.to_thread(self._list_records, user_id, account_id, window)

    async def get_sync_state(self, user_id: str, account_id: str) -> Optional[SyncState]:
        return await asyncio.to_thread(self._get_sync_state, user_id, account_id)

    async def save_sync_state(self, state: SyncState) -> None:
        await asyncio.to_thread(self._save_sync_state, state)

    async def get_connection(self, user_id: str) -> Optional[MetaConnectionInfo]:
        return await asyncio.to_thread(self._get_connection, user_id)

    # =========================================================================
    # BLOCKING IMPLEMENTATIONS (run in worker threads)
    # =========================================================================

    def _records_query(self, db: Session, user_id: str, account_id: str):
        return db.query(AdPerformance).filter(
            AdPerformance.user_id == user_id,
            AdPerformance.ad_account_id == account_id,
        )

    def _count_records(self, user_id: str, account_id: str) -> int:
        with self.session_factory() as db:
            return (
                db.query(func.count(AdPerformance.id))
                .filter(
                    AdPerformance.user_id == user_id,
                    AdPerformance.ad_account_id == account_id,
                )
                .scalar()
                or 0
            )

    def _delete_window(self, user_id: str, account_id: str, window: DateWindow) -> int:
        with self.session_factory() as db:
            try:
                deleted = (
                    self._records_query(db, user_id, account_id)
                    .filter(
                        AdPerformance.date_start <= window.end,
                        AdPerformance.date_end >= window.start,
                    )
                    .delete(synchronize_session=False)
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
        logger.debug("[SYNC_STORE] Deleted %d rows for %s in %s..%s", deleted, account_id, window.start, window.end)
        return deleted

    def _insert_records(self, records: List[PerformanceRecord]) -> int:
        if not records:
            return 0
        with self.session_factory() as db:
            try:
                db.add_all([AdPerformance(**record.to_row()) for record in records])
                db.commit()
            except Exception:
                db.rollback()
                raise
        return len(records)

    def _list_records(
        self,
        user_id: str,
        account_id: str,
        window: Optional[DateWindow],
    ) -> List[PerformanceRecord]:
        with self.session_factory() as db:
            query = self._records_query(db, user_id, account_id)
            if window is not None:
                query = query.filter(
                    AdPerformance.date_start >= window.start,
                    AdPerformance.date_start <= window.end,
                )
            rows = query.order_by(AdPerformance.date_start, AdPerformance.ad_id).all()
            return [_to_record(row) for row in rows]

    def _get_sync_state(self, user_id: str, account_id: str) -> Optional[SyncState]:
        with self.session_factory() as db:
            row = (
                db.query(MetaSyncState)
                .filter(
                    MetaSyncState.user_id == user_id,
                    MetaSyncState.ad_account_id == account_id,
                )
                .first()
            )
            if row is None:
                return None
            return SyncState(
                user_id=row.user_id,
                ad_account_id=row.ad_account_id,
                last_sync_at=row.last_sync_at,
                initial_sync_complete=bool(row.initial_sync_complete),
            )

    def _save_sync_state(self, state: SyncState) -> None:
        with self.session_factory() as db:
            try:
                row = (
                    db.query(MetaSyncState)
                    .filter(
                        MetaSyncState.user_id == state.user_id,
                        MetaSyncState.ad_account_id == state.ad_account_id,
                    )
                    .first()
                )
                if row is None:
                    row = MetaSyncState(user_id=state.user_id, ad_account_id=state.ad_account_id)
                    db.add(row)
                row.last_sync_at = state.last_sync_at
                row.initial_sync_complete = state.initial_sync_complete
                db.commit()
            except Exception:
                db.rollback()
                raise

    def _get_connection(self, user_id: str) -> Optional[MetaConnectionInfo]:
        with self.session_factory() as db:
            row = db.query(MetaConnection).filter(MetaConnection.user_id == user_id).first()
            if row is None:
                return None
            return MetaConnectionInfo(
                user_id=row.user_id,
                access_token=row.access_token,
                token_expires_at=row.token_expires_at,
                event_values=dict(row.event_values or {}),
            )


_RECORD_FIELDS = (
    "user_id", "ad_account_id", "date_start", "date_end",
    "campaign_id", "campaign_name", "adset_id", "adset_name", "ad_id", "ad_name",
    "status", "adset_status", "campaign_status",
    "campaign_daily_budget", "campaign_lifetime_budget",
    "adset_daily_budget", "adset_lifetime_budget", "budget_level",
    "impressions", "clicks", "spend", "purchases", "revenue",
    "results", "result_value", "result_type", "synced_at",
    "creative_id", "thumbnail_url", "image_url", "video_id", "source",
)


def _to_record(row: AdPerformance) -> PerformanceRecord:
    values: Dict[str, Any] = {name: getattr(row, name) for name in _RECORD_FIELDS}
    return PerformanceRecord(**values)
