"""Record materialization.

WHAT:
    Turns reconciled insight rows into canonical PerformanceRecords and adds
    one zero-activity record for every rostered ad that had no rows in the
    window.

FIELD RESOLUTION (decision tables, first match wins):
    status / adset_status / campaign_status:
        own entity status -> "DELETED"
    budgets:
        own entity value -> None
    budget_level:
        campaign has a budget -> "CBO"; ad set has a budget -> "ABO"; None
    results / result_type:
        first positive action in CONVERSION_PRIORITY ->
        first positive "offsite_conversion.custom.*" action -> none
    result_value:
        explicit purchase value from action_values ->
        results x configured unit value for the result type -> None

EVENT VALUES:
    Users configure unit values per conversion event ("CompleteRegistration":
    25). Keys are normalized to snake_case and matched with a few synonyms
    (registration <-> complete_registration, install <-> app_install,
    purchase <-> omni_purchase).
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from adsync.services.hierarchy import STATUS_DELETED, AdContext, Hierarchy
from adsync.services.sync_types import (
    TWO_PLACES,
    Ad,
    AdSet,
    Campaign,
    DateWindow,
    InsightRow,
    PerformanceRecord,
)

logger = logging.getLogger(__name__)

BUDGET_LEVEL_CBO = "CBO"
BUDGET_LEVEL_ABO = "ABO"

# (Meta action_type, normalized result type), highest priority first
CONVERSION_PRIORITY: Tuple[Tuple[str, str], ...] = (
    # purchase-like
    ("omni_purchase", "purchase"),
    ("purchase", "purchase"),
    ("offsite_conversion.fb_pixel_purchase", "purchase"),
    ("onsite_web_purchase", "purchase"),
    # lead-like
    ("lead", "lead"),
    ("onsite_conversion.lead_grouped", "lead"),
    ("offsite_conversion.fb_pixel_lead", "lead"),
    # registration-like
    ("complete_registration", "complete_registration"),
    ("offsite_conversion.fb_pixel_complete_registration", "complete_registration"),
    # install-like
    ("app_install", "app_install"),
    ("mobile_app_install", "app_install"),
    ("omni_app_install", "app_install"),
    # other named actions
    ("contact", "contact"),
    ("submit_application", "submit_application"),
    ("schedule", "schedule"),
    ("start_trial", "start_trial"),
    ("subscribe", "subscribe"),
)

PURCHASE_ACTION_TYPES = tuple(
    action_type for action_type, result_type in CONVERSION_PRIORITY if result_type == "purchase"
)

CUSTOM_CONVERSION_PREFIX = "offsite_conversion.custom."
CUSTOM_RESULT_TYPE = "custom"

EVENT_TYPE_SYNONYMS = {
    "registration": "complete_registration",
    "complete_registration": "registration",
    "install": "app_install",
    "app_install": "install",
    "purchase": "omni_purchase",
    "omni_purchase": "purchase",
}


@dataclass(frozen=True)
class ConversionResult:
    count: int
    result_type: str
    action_type: str


@dataclass(frozen=True)
class MaterializeResult:
    records: Tuple[PerformanceRecord, ...]
    ads_with_activity: int
    ads_without_activity: int

    @property
    def count(self) -> int:
        return len(self.records)


# =============================================================================
# EVENT VALUES
# =============================================================================

def normalize_event_type(name: str) -> str:
    """CompleteRegistration -> complete_registration, "Start Trial" -> start_trial."""
    snake = re.sub(r"([A-Z])", r"_\1", name.strip())
    snake = re.sub(r"[\s\-]+", "_", snake).lower()
    return re.sub(r"_+", "_", snake).strip("_")


def normalize_event_values(raw: Optional[Mapping[str, Any]]) -> Dict[str, Decimal]:
    """Normalize keys and drop entries that are not positive numbers."""
    values: Dict[str, Decimal] = {}
    for key, value in (raw or {}).items():
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            logger.debug("[META_SYNC] Ignoring non-numeric event value %s=%r", key, value)
            continue
        if amount > 0:
            values[normalize_event_type(key)] = amount
    return values


def lookup_event_value(result_type: str, event_values: Mapping[str, Decimal]) -> Optional[Decimal]:
    """Unit value for a result type, trying the documented synonym second."""
    normalized = normalize_event_type(result_type)
    for candidate in (normalized, EVENT_TYPE_SYNONYMS.get(normalized)):
        if candidate and candidate in event_values:
            return event_values[candidate]
    return None


# =============================================================================
# CONVERSIONS
# =============================================================================

def resolve_conversion(actions: Mapping[str, Decimal]) -> Optional[ConversionResult]:
    """First positive action in priority order, then the first custom conversion."""
    for action_type, result_type in CONVERSION_PRIORITY:
        count = int(actions.get(action_type, 0))
        if count > 0:
            return ConversionResult(count=count, result_type=result_type, action_type=action_type)

    for action_type, value in actions.items():
        if action_type.startswith(CUSTOM_CONVERSION_PREFIX) and int(value) > 0:
            return ConversionResult(count=int(value), result_type=CUSTOM_RESULT_TYPE, action_type=action_type)

    return None


def purchase_count(actions: Mapping[str, Decimal]) -> int:
    for action_type in PURCHASE_ACTION_TYPES:
        count = int(actions.get(action_type, 0))
        if count > 0:
            return count
    return 0


def explicit_purchase_value(action_values: Mapping[str, Decimal]) -> Optional[Decimal]:
    for action_type in PURCHASE_ACTION_TYPES:
        value = action_values.get(action_type)
        if value is not None and value > 0:
            return value.quantize(TWO_PLACES)
    return None


def resolve_conversion_value(
    result: Optional[ConversionResult],
    action_values: Mapping[str, Decimal],
    event_values: Mapping[str, Decimal],
) -> Optional[Decimal]:
    explicit = explicit_purchase_value(action_values)
    if explicit is not None:
        return explicit
    if result is None:
        return None
    unit_value = lookup_event_value(result.result_type, event_values)
    if unit_value is None:
        return None
    return (Decimal(result.count) * unit_value).quantize(TWO_PLACES)


# =============================================================================
# STATUS / BUDGET RESOLVERS
# =============================================================================

def resolve_status(entity) -> str:
    if entity is not None and entity.status:
        return entity.status
    return STATUS_DELETED


def resolve_budget(entity, attribute: str) -> Optional[Decimal]:
    if entity is None:
        return None
    return getattr(entity, attribute)


def resolve_budget_level(campaign: Optional[Campaign], adset: Optional[AdSet]) -> Optional[str]:
    if campaign is not None and (campaign.daily_budget or campaign.lifetime_budget):
        return BUDGET_LEVEL_CBO
    if adset is not None and (adset.daily_budget or adset.lifetime_budget):
        return BUDGET_LEVEL_ABO
    return None


def _entity_fields(ad: Optional[Ad], adset: Optional[AdSet], campaign: Optional[Campaign]) -> Dict[str, Any]:
    creative = ad.creative if ad is not None else None
    return {
        "status": resolve_status(ad),
        "adset_status": resolve_status(adset),
        "campaign_status": resolve_status(campaign),
        "campaign_daily_budget": resolve_budget(campaign, "daily_budget"),
        "campaign_lifetime_budget": resolve_budget(campaign, "lifetime_budget"),
        "adset_daily_budget": resolve_budget(adset, "daily_budget"),
        "adset_lifetime_budget": resolve_budget(adset, "lifetime_budget"),
        "budget_level": resolve_budget_level(campaign, adset),
        "creative_id": creative.id if creative else None,
        "thumbnail_url": creative.thumbnail_url if creative else None,
        "image_url": creative.image_url if creative else None,
        "video_id": creative.video_id if creative else None,
    }


# =============================================================================
# MATERIALIZATION
# =============================================================================

def materialize(
    row: InsightRow,
    hierarchy: Hierarchy,
    event_values: Mapping[str, Decimal],
    *,
    user_id: str,
    account_id: str,
    synced_at: datetime,
) -> PerformanceRecord:
    """Canonical record for one insight row."""
    result = resolve_conversion(row.actions)
    explicit_revenue = explicit_purchase_value(row.action_values)

    return PerformanceRecord(
        user_id=user_id,
        ad_account_id=account_id,
        date_start=row.date_start,
        date_end=row.date_stop,
        campaign_id=row.campaign_id,
        campaign_name=row.campaign_name,
        adset_id=row.adset_id,
        adset_name=row.adset_name,
        ad_id=row.ad_id,
        ad_name=row.ad_name,
        impressions=row.impressions,
        clicks=row.clicks,
        spend=row.spend,
        purchases=purchase_count(row.actions),
        revenue=explicit_revenue or Decimal("0"),
        results=result.count if result else 0,
        result_value=resolve_conversion_value(result, row.action_values, event_values),
        result_type=result.result_type if result else None,
        synced_at=synced_at,
        **_entity_fields(
            hierarchy.ad(row.ad_id),
            hierarchy.adset(row.adset_id),
            hierarchy.campaign(row.campaign_id),
        ),
    )


def zero_activity_record(
    context: AdContext,
    window: DateWindow,
    *,
    user_id: str,
    account_id: str,
    synced_at: datetime,
) -> PerformanceRecord:
    """Placeholder for an ad that had no rows in the window, spanning the whole window."""
    return PerformanceRecord(
        user_id=user_id,
        ad_account_id=account_id,
        date_start=window.start,
        date_end=window.end,
        campaign_id=context.campaign.id,
        campaign_name=context.campaign.name,
        adset_id=context.adset.id,
        adset_name=context.adset.name,
        ad_id=context.ad.id,
        ad_name=context.ad.name,
        impressions=0,
        clicks=0,
        spend=Decimal("0"),
        purchases=0,
        revenue=Decimal("0"),
        results=0,
        result_value=None,
        result_type=None,
        synced_at=synced_at,
        **_entity_fields(context.ad, context.adset, context.campaign),
    )


def materialize_all(
    rows: Sequence[InsightRow],
    hierarchy: Hierarchy,
    window: DateWindow,
    event_values: Mapping[str, Decimal],
    *,
    user_id: str,
    account_id: str,
    synced_at: datetime,
) -> MaterializeResult:
    """Records for every active row plus zero-activity records for the rest of the roster."""
    records = [
        materialize(row, hierarchy, event_values, user_id=user_id, account_id=account_id, synced_at=synced_at)
        for row in rows
    ]

    active_ad_ids = {row.ad_id for row in rows}
    idle = [
        zero_activity_record(context, window, user_id=user_id, account_id=account_id, synced_at=synced_at)
        for ad_id, context in sorted(hierarchy.roster.items())
        if ad_id not in active_ad_ids
    ]

    logger.info(
        "[META_SYNC] Materialized %d rows for %d active ads, %d ads without activity",
        len(records),
        len(active_ad_ids),
        len(idle),
    )
    return MaterializeResult(
        records=tuple(records + idle),
        ads_with_activity=len(active_ad_ids),
        ads_without_activity=len(idle),
    )
