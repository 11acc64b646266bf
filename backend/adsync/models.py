"""SQLAlchemy ORM models.

Three tables back the Meta sync engine:
- `meta_connections`: token + conversion event values per user (written by
  the auth layer, read by the sync engine)
- `meta_sync_state`: per (user, ad account) sync progress
- `ad_performance`: canonical daily ad-level performance records
"""

import uuid
from datetime import datetime

from sqlalchemy import Column, String, DateTime, Date, Integer, Numeric, JSON, Text, Boolean, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


class MetaConnection(Base):
    """Meta account link for a user.

    Token lifecycle (OAuth, refresh) is owned by the auth layer. The sync
    engine only reads the token, its expiry and the per-event unit values
    used to price non-purchase conversions.
    """
    __tablename__ = "meta_connections"

    user_id = Column(String, primary_key=True)
    access_token = Column(Text, nullable=False)
    token_expires_at = Column(DateTime, nullable=True)

    # {"CompleteRegistration": 12.5, "lead": 30}; keys normalized at read time
    event_values = Column(JSON, nullable=True)

    connected_at = Column(DateTime, default=datetime.utcnow)


class MetaSyncState(Base):
    """Sync progress for one ad account of one user."""
    __tablename__ = "meta_sync_state"
    __table_args__ = (UniqueConstraint("user_id", "ad_account_id", name="uq_meta_sync_state_account"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False)
    ad_account_id = Column(String, nullable=False)

    last_sync_at = Column(DateTime, nullable=True)  # Last successful write
    initial_sync_complete = Column(Boolean, nullable=False, default=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AdPerformance(Base):
    """One ad on one day (or one zero-activity ad over a whole sync window).

    Campaign and ad set attributes are denormalized onto every row so
    downstream consumers never join against entity tables that may have
    changed since the row was synced.
    """
    __tablename__ = "ad_performance"
    __table_args__ = (
        UniqueConstraint("user_id", "ad_account_id", "ad_id", "date_start", name="uq_ad_performance_day"),
        Index("ix_ad_performance_account_date", "user_id", "ad_account_id", "date_start"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False)
    ad_account_id = Column(String, nullable=False)
    source = Column(String, nullable=False, default="meta_api")

    date_start = Column(Date, nullable=False)
    date_end = Column(Date, nullable=False)

    # Hierarchy
    campaign_id = Column(String, nullable=False)
    campaign_name = Column(String, nullable=False)
    adset_id = Column(String, nullable=False)
    adset_name = Column(String, nullable=False)
    ad_id = Column(String, nullable=False)
    ad_name = Column(String, nullable=False)

    # Meta effective statuses (ACTIVE, PAUSED, CAMPAIGN_PAUSED, ..., DELETED, UNKNOWN)
    status = Column(String, nullable=False)
    adset_status = Column(String, nullable=False)
    campaign_status = Column(String, nullable=False)

    # Budgets in major currency units
    campaign_daily_budget = Column(Numeric(18, 2), nullable=True)
    campaign_lifetime_budget = Column(Numeric(18, 2), nullable=True)
    adset_daily_budget = Column(Numeric(18, 2), nullable=True)
    adset_lifetime_budget = Column(Numeric(18, 2), nullable=True)
    budget_level = Column(String, nullable=True)  # CBO | ABO

    # Metrics
    impressions = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    purchases = Column(Integer, nullable=False, default=0)
    revenue = Column(Numeric(18, 4), nullable=False, default=0)
    results = Column(Integer, nullable=False, default=0)
    result_value = Column(Numeric(18, 4), nullable=True)
    result_type = Column(String, nullable=True)

    # Creative
    creative_id = Column(String, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    image_url = Column(Text, nullable=True)
    video_id = Column(String, nullable=True)

    synced_at = Column(DateTime, nullable=False, default=datetime.utcnow)
