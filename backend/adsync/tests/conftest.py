"""Pytest configuration for adsync integration tests

WHAT: Shared fixtures for the sync engine, storage adapter and HTTP tests
WHY: One fake Graph API (httpx.MockTransport), one in-memory store and one
     file-backed SQLite store keep every test deterministic and offline.
REFERENCES:
    - adsync/services/meta_graph_client.py
    - adsync/services/storage.py
    - adsync/main.py
"""

import json
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from adsync.deps import Settings  # noqa: E402
from adsync.services.storage import PerformanceStore, SqlPerformanceStore  # noqa: E402
from adsync.services.sync_types import (  # noqa: E402
    DateWindow,
    MetaConnectionInfo,
    PerformanceRecord,
    SyncState,
)

ACCOUNT_ID = "act_1001"
USER_ID = "user-1"
TOKEN = "test-token"


# ============================================================================
# Fake Graph API
# ============================================================================

Responder = Callable[[httpx.Request], httpx.Response]


class FakeGraph:
    """Scripted Graph API behind httpx.MockTransport.

    Routes match on method + URL path suffix. Each route holds a queue of
    responses; the last one repeats once the queue is drained.
    """

    def __init__(self):
        self.routes: List[Tuple[str, str, List[Any]]] = []
        self.requests: List[httpx.Request] = []
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self.handle))

    def add(self, method: str, path: str, *responses: Any) -> None:
        self.routes.append((method, path, list(responses)))

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, path, queue in self.routes:
            if request.method == method and request.url.path.endswith(path):
                response = queue.pop(0) if len(queue) > 1 else queue[0]
                if callable(response):
                    return response(request)
                # Fresh copy: scripted responses may be served more than once
                return httpx.Response(
                    response.status_code,
                    headers=response.headers,
                    content=response.content,
                )
        return httpx.Response(
            400,
            json={"error": {"message": f"No route for {request.method} {request.url.path}", "code": 100}},
        )

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path.endswith(path)]

    # -- response builders ---------------------------------------------------

    @staticmethod
    def page(data: Sequence[Dict[str, Any]], next_url: Optional[str] = None) -> httpx.Response:
        body: Dict[str, Any] = {"data": list(data)}
        if next_url:
            body["paging"] = {"next": next_url}
        return httpx.Response(200, json=body)

    @staticmethod
    def error(status_code: int, code: int, message: str = "error", headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        return httpx.Response(
            status_code,
            json={"error": {"message": message, "code": code}},
            headers=headers,
        )

    @staticmethod
    def sub_response(data: Sequence[Dict[str, Any]], next_url: Optional[str] = None, code: int = 200) -> Dict[str, Any]:
        body: Dict[str, Any] = {"data": list(data)}
        if next_url:
            body["paging"] = {"next": next_url}
        return {"code": code, "body": json.dumps(body)}

    @classmethod
    def batch(cls, campaigns, adsets, ads) -> httpx.Response:
        return httpx.Response(
            200,
            json=[cls.sub_response(campaigns), cls.sub_response(adsets), cls.sub_response(ads)],
        )

    def serve_account(
        self,
        insights: Sequence[Dict[str, Any]],
        campaigns: Sequence[Dict[str, Any]],
        adsets: Sequence[Dict[str, Any]],
        ads: Sequence[Dict[str, Any]],
        account_id: str = ACCOUNT_ID,
    ) -> None:
        """One insights page plus a clean batch response."""
        self.add("GET", f"/{account_id}/insights", self.page(insights))
        self.add("POST", "/v18.0/", self.batch(campaigns, adsets, ads))


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def sleeps() -> List[float]:
    """Every wait requested by the code under test, in order."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


# ============================================================================
# Meta payload builders
# ============================================================================

def _insight(ad_id, adset_id, campaign_id, day, spend="10.00", impressions="1000", clicks="20", actions=None, action_values=None):
    row = {
        "ad_id": ad_id,
        "ad_name": f"Ad {ad_id}",
        "adset_id": adset_id,
        "adset_name": f"Ad Set {adset_id}",
        "campaign_id": campaign_id,
        "campaign_name": f"Campaign {campaign_id}",
        "date_start": day,
        "date_stop": day,
        "impressions": impressions,
        "clicks": clicks,
        "spend": spend,
    }
    if actions is not None:
        row["actions"] = [{"action_type": k, "value": v} for k, v in actions.items()]
    if action_values is not None:
        row["action_values"] = [{"action_type": k, "value": v} for k, v in action_values.items()]
    return row


@pytest.fixture
def insight():
    return _insight


@pytest.fixture
def standard_entities():
    """One CBO campaign with two ads (one idle) and a second ABO campaign."""
    campaigns = [
        {"id": "c1", "name": "Campaign c1", "effective_status": "ACTIVE", "daily_budget": "5000"},
        {"id": "c2", "name": "Campaign c2", "effective_status": "PAUSED"},
    ]
    adsets = [
        {"id": "s1", "name": "Ad Set s1", "campaign_id": "c1", "effective_status": "ACTIVE"},
        {"id": "s2", "name": "Ad Set s2", "campaign_id": "c2", "effective_status": "CAMPAIGN_PAUSED", "lifetime_budget": "100000"},
    ]
    ads = [
        {"id": "a1", "name": "Ad a1", "adset_id": "s1", "effective_status": "ACTIVE",
         "creative": {"id": "cr1", "thumbnail_url": "https://cdn/t1.jpg"}},
        {"id": "a2", "name": "Ad a2", "adset_id": "s1", "effective_status": "PAUSED"},
        {"id": "a3", "name": "Ad a3", "adset_id": "s2", "effective_status": "CAMPAIGN_PAUSED"},
    ]
    return campaigns, adsets, ads


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        META_PAGE_DELAY_SECONDS=0.5,
        META_BATCH_FALLBACK_DELAY_SECONDS=1.5,
        META_RATE_LIMIT_BASE_DELAY_SECONDS=30.0,
        META_GENERIC_RETRY_DELAY_SECONDS=2.0,
        META_SYNC_WRITE_BATCH_SIZE=2,
        META_SYNC_WRITE_CONCURRENCY=2,
        SENTRY_DSN=None,
    )


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2024, 6, 30, 12, 0, 0)


# ============================================================================
# Stores
# ============================================================================

class InMemoryPerformanceStore(PerformanceStore):
    """Dict-backed PerformanceStore with failure injection for inserts."""

    def __init__(self):
        self.records: Dict[Tuple[str, str, str, Any], PerformanceRecord] = {}
        self.states: Dict[Tuple[str, str], SyncState] = {}
        self.connections: Dict[str, MetaConnectionInfo] = {}
        self.insert_calls = 0
        self.delete_calls: List[DateWindow] = []
        self.fail_insert_call: Optional[int] = None  # 1-based insert call that raises

    async def count_records(self, user_id, account_id):
        return sum(1 for key in self.records if key[0] == user_id and key[1] == account_id)

    async def delete_window(self, user_id, account_id, window):
        self.delete_calls.append(window)
        doomed = [
            key for key, record in self.records.items()
            if key[0] == user_id and key[1] == account_id and window.overlaps(record.date_start, record.date_end)
        ]
        for key in doomed:
            del self.records[key]
        return len(doomed)

    async def insert_records(self, records):
        self.insert_calls += 1
        if self.fail_insert_call is not None and self.insert_calls == self.fail_insert_call:
            raise RuntimeError("database unavailable")
        for record in records:
            key = (record.user_id, record.ad_account_id, record.ad_id, record.date_start)
            if key in self.records:
                raise RuntimeError(f"duplicate record {key}")
            self.records[key] = record
        return len(records)

    async def list_records(self, user_id, account_id, window=None):
        return sorted(
            (
                record for key, record in self.records.items()
                if key[0] == user_id and key[1] == account_id
                and (window is None or window.contains(record.date_start))
            ),
            key=lambda r: (r.date_start, r.ad_id),
        )

    async def get_sync_state(self, user_id, account_id):
        return self.states.get((user_id, account_id))

    async def save_sync_state(self, state):
        self.states[(state.user_id, state.ad_account_id)] = state

    async def get_connection(self, user_id):
        return self.connections.get(user_id)


@pytest.fixture
def memory_store() -> InMemoryPerformanceStore:
    store = InMemoryPerformanceStore()
    store.connections[USER_ID] = MetaConnectionInfo(
        user_id=USER_ID,
        access_token=TOKEN,
        event_values={"CompleteRegistration": 25, "lead": "40"},
    )
    return store


@pytest.fixture
def sql_session_factory(tmp_path):
    """File-backed SQLite so worker threads share one database."""
    db_file = tmp_path / "adsync_test.db"
    engine = create_engine(
        f"sqlite:///{db_file}",
        connect_args={"check_same_thread": False},
    )
    from adsync.models import Base

    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    yield SessionLocal

    engine.dispose()


@pytest.fixture
def sql_store(sql_session_factory) -> SqlPerformanceStore:
    return SqlPerformanceStore(sql_session_factory)
