"""
Typed records passed between sync stages.

WHAT: Dataclasses for Meta entities, insight rows, sync windows and the
      canonical performance record, plus parsers from Graph API payloads.
WHY:  Stages exchange explicit, immutable values instead of ad-hoc dicts so
      each stage can be tested in isolation.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Tuple


CENTS = Decimal("100")
TWO_PLACES = Decimal("0.01")


class SyncMode(str, Enum):
    initial = "initial"
    append = "append"


class Collection(str, Enum):
    """Entity collections fetched from an ad account."""
    campaigns = "campaigns"
    adsets = "adsets"
    ads = "ads"


# =============================================================================
# PARSING HELPERS
# =============================================================================

def to_int(value: Any) -> int:
    """Graph API numbers arrive as strings. Missing or garbage -> 0."""
    if value is None or value == "":
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def budget_from_cents(value: Any) -> Optional[Decimal]:
    """Meta returns budgets in minor units (cents). Stored in major units."""
    if value is None or value == "":
        return None
    try:
        return (Decimal(str(value)) / CENTS).quantize(TWO_PLACES)
    except (InvalidOperation, ValueError):
        return None


def _action_map(items: Any) -> Dict[str, Decimal]:
    """Flatten Meta's [{"action_type": ..., "value": ...}] arrays."""
    result: Dict[str, Decimal] = {}
    for item in items or []:
        action_type = item.get("action_type")
        if action_type:
            result[action_type] = to_decimal(item.get("value"))
    return result


# =============================================================================
# WINDOW
# =============================================================================

@dataclass(frozen=True)
class DateWindow:
    """Inclusive date range a sync run owns."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Window start {self.start} is after end {self.end}")

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def overlaps(self, start: date, end: date) -> bool:
        return start <= self.end and end >= self.start


# =============================================================================
# ENTITIES
# =============================================================================

@dataclass(frozen=True)
class Campaign:
    id: str
    name: str
    status: str
    daily_budget: Optional[Decimal] = None
    lifetime_budget: Optional[Decimal] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Campaign":
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "Unnamed Campaign",
            status=data.get("effective_status") or data.get("status") or "UNKNOWN",
            daily_budget=budget_from_cents(data.get("daily_budget")),
            lifetime_budget=budget_from_cents(data.get("lifetime_budget")),
        )


@dataclass(frozen=True)
class AdSet:
    id: str
    name: str
    campaign_id: Optional[str]
    status: str
    daily_budget: Optional[Decimal] = None
    lifetime_budget: Optional[Decimal] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "AdSet":
        campaign_id = data.get("campaign_id")
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "Unnamed Ad Set",
            campaign_id=str(campaign_id) if campaign_id else None,
            status=data.get("effective_status") or data.get("status") or "UNKNOWN",
            daily_budget=budget_from_cents(data.get("daily_budget")),
            lifetime_budget=budget_from_cents(data.get("lifetime_budget")),
        )


@dataclass(frozen=True)
class Creative:
    id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    image_url: Optional[str] = None
    video_id: Optional[str] = None
    image_hash: Optional[str] = None

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> Optional["Creative"]:
        if not data or not isinstance(data, dict):
            return None
        return cls(
            id=data.get("id"),
            thumbnail_url=data.get("thumbnail_url"),
            image_url=data.get("image_url"),
            video_id=data.get("video_id"),
            image_hash=data.get("image_hash"),
        )


@dataclass(frozen=True)
class Ad:
    id: str
    name: str
    adset_id: Optional[str]
    status: str
    creative: Optional[Creative] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Ad":
        adset_id = data.get("adset_id")
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "Unnamed Ad",
            adset_id=str(adset_id) if adset_id else None,
            status=data.get("effective_status") or data.get("status") or "UNKNOWN",
            creative=Creative.from_api(data.get("creative")),
        )


# =============================================================================
# INSIGHT ROWS
# =============================================================================

@dataclass(frozen=True)
class InsightRow:
    """One ad-level, single-day row from the insights endpoint."""

    ad_id: str
    adset_id: str
    campaign_id: str
    ad_name: str
    adset_name: str
    campaign_name: str
    date_start: date
    date_stop: date
    impressions: int = 0
    clicks: int = 0
    spend: Decimal = Decimal("0")
    actions: Dict[str, Decimal] = field(default_factory=dict)
    action_values: Dict[str, Decimal] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "InsightRow":
        return cls(
            ad_id=str(data["ad_id"]),
            adset_id=str(data.get("adset_id") or ""),
            campaign_id=str(data.get("campaign_id") or ""),
            ad_name=data.get("ad_name") or "Unnamed Ad",
            adset_name=data.get("adset_name") or "Unnamed Ad Set",
            campaign_name=data.get("campaign_name") or "Unnamed Campaign",
            date_start=date.fromisoformat(data["date_start"]),
            date_stop=date.fromisoformat(data.get("date_stop") or data["date_start"]),
            impressions=to_int(data.get("impressions")),
            clicks=to_int(data.get("clicks")),
            spend=to_decimal(data.get("spend")).quantize(TWO_PLACES),
            actions=_action_map(data.get("actions")),
            action_values=_action_map(data.get("action_values")),
        )


# =============================================================================
# CANONICAL RECORD + STATE
# =============================================================================

@dataclass(frozen=True)
class PerformanceRecord:
    """Canonical stored row, identity (ad_account_id, ad_id, date_start)."""

    user_id: str
    ad_account_id: str
    date_start: date
    date_end: date
    campaign_id: str
    campaign_name: str
    adset_id: str
    adset_name: str
    ad_id: str
    ad_name: str
    status: str
    adset_status: str
    campaign_status: str
    campaign_daily_budget: Optional[Decimal]
    campaign_lifetime_budget: Optional[Decimal]
    adset_daily_budget: Optional[Decimal]
    adset_lifetime_budget: Optional[Decimal]
    budget_level: Optional[str]
    impressions: int
    clicks: int
    spend: Decimal
    purchases: int
    revenue: Decimal
    results: int
    result_value: Optional[Decimal]
    result_type: Optional[str]
    synced_at: datetime
    creative_id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    image_url: Optional[str] = None
    video_id: Optional[str] = None
    source: str = "meta_api"

    @property
    def identity(self) -> Tuple[str, str, date]:
        return (self.ad_account_id, self.ad_id, self.date_start)

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SyncState:
    user_id: str
    ad_account_id: str
    last_sync_at: Optional[datetime] = None
    initial_sync_complete: bool = False


@dataclass(frozen=True)
class MetaConnectionInfo:
    """What the sync engine needs from the (external) auth layer."""

    user_id: str
    access_token: str
    token_expires_at: Optional[datetime] = None
    event_values: Dict[str, float] = field(default_factory=dict)
