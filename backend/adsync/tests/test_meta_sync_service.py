"""End-to-end tests for MetaSyncOrchestrator.

WHAT:
    Runs the full sync (fetch -> reconcile -> materialize -> write) against a
    scripted Graph API and the in-memory store.

REFERENCES:
    - adsync/services/meta_sync_service.py
    - adsync/tests/conftest.py (FakeGraph, InMemoryPerformanceStore)
"""

import asyncio
import json
from datetime import date, datetime, timedelta
from decimal import Decimal

import httpx
import pytest

from adsync.services.meta_sync_service import (
    MESSAGE_COMPLETE,
    MESSAGE_NO_ADS,
    MetaSyncOrchestrator,
    normalize_account_id,
)
from adsync.services.sync_errors import (
    ConnectionNotFoundError,
    IncompleteEntityDataError,
    RateLimitExceeded,
    TokenExpiredError,
    TransientFetchError,
    TruncatedFetchError,
    WriteFailure,
)
from adsync.services.sync_types import DateWindow, MetaConnectionInfo, SyncMode, SyncState

ACCOUNT_ID = "act_1001"
USER_ID = "user-1"

INITIAL_WINDOW = DateWindow(start=date(2024, 4, 1), end=date(2024, 6, 30))


@pytest.fixture
def orchestrator(memory_store, settings, graph, fake_sleep, fixed_now):
    return MetaSyncOrchestrator(
        memory_store,
        settings,
        http_client=graph.client,
        sleep=fake_sleep,
        clock=lambda: fixed_now,
    )


@pytest.fixture
def account_rows(insight):
    return [
        insight("a1", "s1", "c1", "2024-06-01", spend="25.50",
                actions={"omni_purchase": "2", "link_click": "30"},
                action_values={"omni_purchase": "150.50"}),
        insight("a1", "s1", "c1", "2024-06-02", spend="10.00"),
        insight("a3", "s2", "c2", "2024-06-01", spend="5.00", actions={"lead": "3"}),
    ]


def _run(orchestrator, account_id=ACCOUNT_ID, **kwargs):
    return asyncio.run(orchestrator.run(USER_ID, account_id, **kwargs))


def _stored(store):
    return {(r.ad_id, r.date_start): r for r in store.records.values()}


class TestInitialSync:
    def test_writes_active_rows_and_zero_activity_ads(self, orchestrator, graph, memory_store, account_rows, standard_entities, fixed_now, sleeps):
        graph.serve_account(account_rows, *standard_entities)

        summary = _run(orchestrator)

        assert summary.message == MESSAGE_COMPLETE
        assert summary.sync_type == SyncMode.initial
        assert summary.date_range == INITIAL_WINDOW
        assert summary.count == 4
        assert summary.ads_with_activity == 2
        assert summary.ads_without_activity == 1
        assert sleeps == []

        stored = _stored(memory_store)
        purchase_day = stored[("a1", date(2024, 6, 1))]
        assert purchase_day.purchases == 2
        assert purchase_day.revenue == Decimal("150.50")
        assert purchase_day.result_type == "purchase"
        assert purchase_day.result_value == Decimal("150.50")
        assert purchase_day.spend == Decimal("25.50")
        assert purchase_day.budget_level == "CBO"
        assert purchase_day.campaign_daily_budget == Decimal("50.00")
        assert purchase_day.creative_id == "cr1"

        lead_day = stored[("a3", date(2024, 6, 1))]
        assert lead_day.results == 3
        assert lead_day.result_type == "lead"
        assert lead_day.result_value == Decimal("120.00")
        assert lead_day.budget_level == "ABO"
        assert lead_day.adset_lifetime_budget == Decimal("1000.00")
        assert lead_day.campaign_status == "PAUSED"

        idle = stored[("a2", INITIAL_WINDOW.start)]
        assert idle.date_end == INITIAL_WINDOW.end
        assert idle.status == "PAUSED"
        assert idle.spend == Decimal("0")
        assert idle.impressions == 0

        state = memory_store.states[(USER_ID, ACCOUNT_ID)]
        assert state.initial_sync_complete is True
        assert state.last_sync_at == fixed_now

    def test_requests_ninety_day_window(self, orchestrator, graph, account_rows, standard_entities):
        graph.serve_account(account_rows, *standard_entities)

        _run(orchestrator)

        request = graph.calls("GET", "/act_1001/insights")[0]
        assert json.loads(request.url.params["time_range"]) == {"since": "2024-04-01", "until": "2024-06-30"}

    def test_rerun_is_idempotent(self, orchestrator, graph, memory_store, account_rows, standard_entities):
        graph.serve_account(account_rows, *standard_entities)

        _run(orchestrator)
        first = dict(memory_store.records)
        summary = _run(orchestrator, force_full_sync=True)

        assert summary.count == 4
        assert memory_store.records == first

    def test_rows_of_deleted_campaigns_are_not_written(self, orchestrator, graph, memory_store, account_rows, standard_entities, insight):
        rows = account_rows + [insight("a9", "s9", "c9", "2024-06-03", spend="99.00")]
        graph.serve_account(rows, *standard_entities)

        summary = _run(orchestrator)

        assert summary.dropped_rows == 1
        assert summary.count == 4
        assert all(r.campaign_id != "c9" for r in memory_store.records.values())

    def test_missing_ad_set_is_filled_from_row(self, orchestrator, graph, memory_store, insight, standard_entities):
        campaigns, adsets, ads = standard_entities
        rows = [insight("a7", "s7", "c1", "2024-06-05")]
        graph.serve_account(rows, campaigns, adsets, ads)

        _run(orchestrator)

        record = _stored(memory_store)[("a7", date(2024, 6, 5))]
        # Collections fetched fine, so an unseen entity is presumed active
        assert record.adset_status == "ACTIVE"
        assert record.status == "ACTIVE"
        assert record.campaign_status == "ACTIVE"

    def test_account_id_prefix_is_added(self, orchestrator, graph, memory_store, account_rows, standard_entities):
        graph.serve_account(account_rows, *standard_entities)

        _run(orchestrator, account_id="1001")

        assert graph.calls("GET", "/act_1001/insights")
        assert (USER_ID, ACCOUNT_ID) in memory_store.states


class TestAppendSync:
    def test_completed_account_only_refetches_recent_days(self, orchestrator, graph, memory_store, account_rows, insight, standard_entities, fixed_now):
        graph.serve_account(account_rows, *standard_entities)
        _run(orchestrator)
        graph.routes.clear()
        graph.serve_account([insight("a1", "s1", "c1", "2024-06-29")], *standard_entities)

        summary = _run(orchestrator)

        assert summary.sync_type == SyncMode.append
        # last_sync_at (June 30) minus the 3-day buffer
        assert summary.date_range == DateWindow(start=date(2024, 6, 27), end=date(2024, 6, 30))
        request = graph.calls("GET", "/act_1001/insights")[-1]
        assert json.loads(request.url.params["time_range"])["since"] == "2024-06-27"

        stored = _stored(memory_store)
        # History outside the window survives
        assert ("a1", date(2024, 6, 1)) in stored
        # The idle ad's placeholder moves to the new window
        assert ("a2", INITIAL_WINDOW.start) not in stored
        assert ("a2", date(2024, 6, 27)) in stored
        assert ("a1", date(2024, 6, 29)) in stored
        assert ("a3", date(2024, 6, 27)) in stored
        assert memory_store.states[(USER_ID, ACCOUNT_ID)].last_sync_at == fixed_now
        assert memory_store.states[(USER_ID, ACCOUNT_ID)].initial_sync_complete is True

    def test_append_with_empty_store_runs_initial(self, orchestrator, graph, memory_store, account_rows, standard_entities):
        """WHAT: A completed state with zero stored rows downgrades to initial.
        WHY: An append window can't restore history that was never written.
        """
        memory_store.states[(USER_ID, ACCOUNT_ID)] = SyncState(USER_ID, ACCOUNT_ID, datetime(2024, 6, 29), True)
        graph.serve_account(account_rows, *standard_entities)

        summary = _run(orchestrator)

        assert summary.sync_type == SyncMode.initial
        assert summary.date_range == INITIAL_WINDOW
        assert summary.count == 4

    def test_idle_ads_keep_one_zero_activity_record_across_runs(self, memory_store, settings, graph, fake_sleep, insight, standard_entities):
        """WHAT: Repeated append runs leave exactly one zero-activity record per idle ad.
        WHY: Each run writes a fresh placeholder; the previous one must be replaced, not kept.
        """
        placeholders = []
        for run_day in (date(2024, 6, 30), date(2024, 7, 5), date(2024, 7, 10), date(2024, 7, 15)):
            graph.routes.clear()
            graph.serve_account([insight("a1", "s1", "c1", run_day.isoformat())], *standard_entities)
            orchestrator = MetaSyncOrchestrator(
                memory_store,
                settings,
                http_client=graph.client,
                sleep=fake_sleep,
                clock=lambda: datetime.combine(run_day, datetime.min.time()) + timedelta(hours=12),
            )

            summary = _run(orchestrator)

            idle = [r for r in memory_store.records.values() if r.ad_id == "a2"]
            placeholders.append(len(idle))
            assert idle[0].date_start == summary.date_range.start

        assert placeholders == [1, 1, 1, 1]
        assert summary.sync_type == SyncMode.append
        assert summary.date_range == DateWindow(start=date(2024, 7, 7), end=date(2024, 7, 15))


class TestFailuresLeaveStoreUntouched:
    def _assert_untouched(self, store):
        assert store.records == {}
        assert store.states == {}
        assert store.delete_calls == []
        assert store.insert_calls == 0

    def test_missing_connection(self, orchestrator, graph, memory_store):
        memory_store.connections.clear()

        with pytest.raises(ConnectionNotFoundError) as exc_info:
            _run(orchestrator)

        assert exc_info.value.category == "token_expired"
        assert graph.requests == []
        self._assert_untouched(memory_store)

    def test_expired_token_is_rejected_before_fetching(self, orchestrator, graph, memory_store, fixed_now):
        connection = memory_store.connections[USER_ID]
        memory_store.connections[USER_ID] = MetaConnectionInfo(
            user_id=USER_ID,
            access_token=connection.access_token,
            token_expires_at=fixed_now - timedelta(hours=1),
        )

        with pytest.raises(TokenExpiredError):
            _run(orchestrator)

        assert graph.requests == []

    def test_revoked_token_during_fetch(self, orchestrator, graph, memory_store):
        graph.add("GET", "/act_1001/insights", graph.error(400, 190, "Error validating access token"))

        with pytest.raises(TokenExpiredError):
            _run(orchestrator)

        self._assert_untouched(memory_store)

    def test_rate_limited_insights(self, orchestrator, graph, memory_store, sleeps):
        graph.add("GET", "/act_1001/insights", graph.error(429, 17, "User request limit reached"))

        with pytest.raises(RateLimitExceeded) as exc_info:
            _run(orchestrator)

        assert exc_info.value.retryable is True
        assert exc_info.value.retry_after == 120.0
        assert sleeps == [30.0, 60.0, 90.0]
        self._assert_untouched(memory_store)

    def test_rate_limited_after_partial_pages_discards_rows(self, orchestrator, graph, memory_store, account_rows):
        graph.add(
            "GET", "/act_1001/insights",
            graph.page(account_rows, next_url="https://graph.facebook.com/v18.0/act_1001/insights?after=x"),
            graph.error(429, 17),
        )

        with pytest.raises(RateLimitExceeded):
            _run(orchestrator)

        self._assert_untouched(memory_store)

    def test_generic_insights_failure(self, orchestrator, graph, memory_store):
        graph.add("GET", "/act_1001/insights", httpx.Response(500, content=b"Internal Server Error"))

        with pytest.raises(TransientFetchError):
            _run(orchestrator)

        self._assert_untouched(memory_store)

    def test_truncated_insights(self, memory_store, settings, graph, fake_sleep, fixed_now, account_rows):
        settings.META_MAX_PAGES = 1
        orchestrator = MetaSyncOrchestrator(
            memory_store, settings, http_client=graph.client, sleep=fake_sleep, clock=lambda: fixed_now
        )
        graph.add(
            "GET", "/act_1001/insights",
            graph.page(account_rows, next_url="https://graph.facebook.com/v18.0/act_1001/insights?after=x"),
        )

        with pytest.raises(TruncatedFetchError) as exc_info:
            _run(orchestrator)

        assert exc_info.value.retryable is False
        self._assert_untouched(memory_store)

    def test_empty_campaigns_with_rows(self, orchestrator, graph, memory_store, account_rows, standard_entities):
        """WHAT: Campaigns came back empty while rows exist.
        WHY: Every row would be dropped as deleted, wiping the window.
        """
        _, adsets, ads = standard_entities
        graph.serve_account(account_rows, [], adsets, ads)

        with pytest.raises(IncompleteEntityDataError) as exc_info:
            _run(orchestrator)

        assert exc_info.value.category == "incomplete_data"
        self._assert_untouched(memory_store)

    def test_campaign_fetch_failure_with_rows(self, orchestrator, graph, memory_store, account_rows, standard_entities):
        _, adsets, ads = standard_entities
        graph.add("GET", "/act_1001/insights", graph.page(account_rows))
        graph.add("POST", "/v18.0/", httpx.Response(200, json=[
            {"code": 500, "body": json.dumps({"error": {"message": "boom", "code": 1}})},
            graph.sub_response(adsets),
            graph.sub_response(ads),
        ]))
        graph.add("GET", "/act_1001/campaigns", graph.error(500, 1, "An unknown error occurred"))

        with pytest.raises(IncompleteEntityDataError):
            _run(orchestrator)

        self._assert_untouched(memory_store)


class TestWriteOutcomes:
    def test_no_ads_leaves_store_untouched(self, orchestrator, graph, memory_store):
        graph.serve_account([], [], [], [])

        summary = _run(orchestrator)

        assert summary.message == MESSAGE_NO_ADS
        assert summary.count == 0
        assert memory_store.delete_calls == []
        assert memory_store.states == {}

    def test_zero_activity_only_account_is_written(self, orchestrator, graph, memory_store, standard_entities):
        graph.serve_account([], *standard_entities)

        summary = _run(orchestrator)

        assert summary.message == MESSAGE_COMPLETE
        assert summary.count == 3
        assert summary.ads_with_activity == 0
        assert all(r.date_start == INITIAL_WINDOW.start for r in memory_store.records.values())

    def test_write_failure_keeps_previous_state(self, orchestrator, graph, memory_store, account_rows, standard_entities):
        graph.serve_account(account_rows, *standard_entities)
        memory_store.fail_insert_call = 1

        with pytest.raises(WriteFailure):
            _run(orchestrator)

        assert memory_store.records == {}
        assert memory_store.states == {}


class TestNormalizeAccountId:
    def test_adds_prefix_once(self):
        assert normalize_account_id("123") == "act_123"
        assert normalize_account_id("act_123") == "act_123"
        assert normalize_account_id(" 123 ") == "act_123"

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            normalize_account_id("  ")
