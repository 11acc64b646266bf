"""
Initial vs append sync selection.

WHAT: Decides the mode and the date window of a sync run from the persisted
      sync state and the number of rows already stored for the account.
WHY:  A full 90-day backfill is expensive against Meta's quota, so completed
      accounts only re-fetch a short window. The window reaches back a few
      days before the last sync because Meta keeps finalizing attribution.

Rules:
    - No state, completion flag false, or a forced full sync -> initial,
      window [today - lookback_days, today]
    - Otherwise append, window [last_sync_at - buffer_days, today]
    - Append with zero stored rows -> downgraded to initial. An empty store
      must never be "confirmed" by a window that can't reach history.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from adsync.services.storage import PerformanceStore
from adsync.services.sync_types import DateWindow, SyncMode, SyncState

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 90
DEFAULT_APPEND_BUFFER_DAYS = 3


@dataclass(frozen=True)
class SyncDecision:
    mode: SyncMode
    window: DateWindow
    downgraded: bool = False


class SyncModeSelector:
    def __init__(
        self,
        store: PerformanceStore,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        buffer_days: int = DEFAULT_APPEND_BUFFER_DAYS,
    ):
        self.store = store
        self.lookback_days = lookback_days
        self.buffer_days = buffer_days

    def initial_window(self, today: date) -> DateWindow:
        return DateWindow(start=today - timedelta(days=self.lookback_days), end=today)

    def append_window(self, last_sync_at: datetime, today: date) -> DateWindow:
        start = last_sync_at.date() - timedelta(days=self.buffer_days)
        return DateWindow(start=min(start, today), end=today)

    def decide(
        self,
        state: Optional[SyncState],
        stored_rows: int,
        force_full_sync: bool,
        today: date,
    ) -> SyncDecision:
        """Pure decision from already-loaded inputs."""
        if (
            force_full_sync
            or state is None
            or not state.initial_sync_complete
            or state.last_sync_at is None
        ):
            return SyncDecision(mode=SyncMode.initial, window=self.initial_window(today))

        if stored_rows == 0:
            return SyncDecision(
                mode=SyncMode.initial,
                window=self.initial_window(today),
                downgraded=True,
            )

        return SyncDecision(
            mode=SyncMode.append,
            window=self.append_window(state.last_sync_at, today),
        )

    async def decide_mode(
        self,
        user_id: str,
        account_id: str,
        force_full_sync: bool = False,
        today: Optional[date] = None,
    ) -> SyncDecision:
        """Load state for the account and decide the run's mode and window."""
        today = today or date.today()
        state = await self.store.get_sync_state(user_id, account_id)
        stored_rows = await self.store.count_records(user_id, account_id)

        decision = self.decide(state, stored_rows, force_full_sync, today)
        if decision.downgraded:
            logger.warning(
                "[META_SYNC] Append requested for %s but no rows are stored, running initial sync",
                account_id,
            )
        logger.info(
            "[META_SYNC] %s sync for %s: %s to %s (%d days)",
            decision.mode.value,
            account_id,
            decision.window.start,
            decision.window.end,
            decision.window.days,
        )
        return decision
