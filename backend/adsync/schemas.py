"""Pydantic request/response schemas for the sync API."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field

from adsync.services.sync_types import SyncMode


class DateRange(BaseModel):
    """Date range for a sync run.

    WHAT: Start and end dates of the window that was replaced
    WHY: Provides visibility into what period was synced
    """

    start: date = Field(description="Start date (inclusive)")
    end: date = Field(description="End date (inclusive)")


class SyncRequest(BaseModel):
    """Request for a Meta performance sync."""

    user_id: str = Field(description="Owner of the Meta connection")
    ad_account_id: str = Field(
        description="Meta ad account id, with or without the act_ prefix"
    )
    force_full_sync: bool = Field(
        default=False,
        description="Ignore sync state and re-fetch the full lookback window"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "user_id": "user_123",
                "ad_account_id": "act_1234567890",
                "force_full_sync": False
            }
        }
    }


class SyncResponse(BaseModel):
    """Result of a completed sync run."""

    message: str = Field(description="'Sync complete' or 'No ads found in this account'")
    count: int = Field(description="Records written for the window")
    sync_type: SyncMode = Field(description="initial (full backfill) or append (incremental)")
    date_range: DateRange = Field(description="Window that was synced")
    ads_with_activity: int = Field(default=0, description="Ads with at least one row in the window")
    ads_without_activity: int = Field(default=0, description="Ads stored as zero-activity records")
    dropped_rows: int = Field(default=0, description="Rows skipped because their campaign no longer exists")


class SyncStatusResponse(BaseModel):
    """Persisted sync state for one ad account."""

    user_id: str
    ad_account_id: str
    last_sync_at: Optional[datetime] = None
    initial_sync_complete: bool = False
    record_count: int = Field(default=0, description="Records currently stored for the account")


class SyncEnqueueResponse(BaseModel):
    """Result of queueing a background sync."""

    job_id: str = Field(description="Deterministic job id: meta-sync:{user_id}:{ad_account_id}")
    enqueued: bool = Field(description="False when a sync for the account is already queued or running")


class SyncErrorResponse(BaseModel):
    """Error body returned for failed syncs."""

    error: str = Field(description="User-facing error message")
    category: str = Field(description="rate_limited | incomplete_data | token_expired | generic")
    retryable: bool = Field(description="Whether retrying later can succeed without user action")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
