"""
Hierarchy reconciliation.

WHAT: Joins the window's insight rows with the fetched campaign / ad set / ad
      collections into read-only, id-keyed maps and an ad -> (ad set,
      campaign) roster the materializer works from.

Step order (never reorder):
    1. Index entities by id.
    2. Drop rows whose campaign is not in the campaign index. A missing
       campaign was deleted or archived; its rows must not come back.
    3. Fill ad sets / ads referenced by the remaining rows but missing from
       the index. Fallback status is UNKNOWN when that collection's fetch
       failed, ACTIVE when it succeeded (the row itself proves recent
       activity). Campaigns can't be missing after step 2.
    4. Build the ad roster, including ads with no rows in the window whose
       ad set and campaign are both indexed.

A completeness gate runs before step 1: rows exist but the campaign fetch
failed, or a collection fetch "succeeded" with nothing in it. Writing then
would wipe known-good statuses and budgets, so IncompleteEntityDataError is
raised instead.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple, TypeVar

from adsync.services.sync_errors import IncompleteEntityDataError
from adsync.services.sync_types import Ad, AdSet, Campaign, Collection, InsightRow

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "ACTIVE"
STATUS_UNKNOWN = "UNKNOWN"
STATUS_DELETED = "DELETED"

E = TypeVar("E")


def fallback_status(fetch_succeeded: bool) -> str:
    return STATUS_ACTIVE if fetch_succeeded else STATUS_UNKNOWN


@dataclass(frozen=True)
class EntityIndex:
    """Read-only id -> entity maps for one run."""

    campaigns: Mapping[str, Campaign]
    adsets: Mapping[str, AdSet]
    ads: Mapping[str, Ad]


@dataclass(frozen=True)
class AdContext:
    ad: Ad
    adset: AdSet
    campaign: Campaign


@dataclass(frozen=True)
class Hierarchy:
    index: EntityIndex
    roster: Mapping[str, AdContext]

    def campaign(self, campaign_id: str) -> Optional[Campaign]:
        return self.index.campaigns.get(campaign_id)

    def adset(self, adset_id: str) -> Optional[AdSet]:
        return self.index.adsets.get(adset_id)

    def ad(self, ad_id: str) -> Optional[Ad]:
        return self.index.ads.get(ad_id)


@dataclass(frozen=True)
class ReconcileResult:
    active_rows: Tuple[InsightRow, ...]
    hierarchy: Hierarchy
    dropped_rows: Tuple[InsightRow, ...]


# =============================================================================
# STEPS
# =============================================================================

def _by_id(entities: Iterable[E]) -> Mapping[str, E]:
    # Meta occasionally repeats an entity across pages; first occurrence wins
    result: Dict[str, E] = {}
    for entity in entities:
        result.setdefault(entity.id, entity)
    return MappingProxyType(result)


def index_entities(
    campaigns: Iterable[Campaign],
    adsets: Iterable[AdSet],
    ads: Iterable[Ad],
) -> EntityIndex:
    return EntityIndex(
        campaigns=_by_id(campaigns),
        adsets=_by_id(adsets),
        ads=_by_id(ads),
    )


def drop_orphaned_rows(
    rows: Sequence[InsightRow],
    campaigns: Mapping[str, Campaign],
) -> Tuple[Tuple[InsightRow, ...], Tuple[InsightRow, ...]]:
    """Split rows into (active, dropped) by campaign membership."""
    active = tuple(row for row in rows if row.campaign_id in campaigns)
    dropped = tuple(row for row in rows if row.campaign_id not in campaigns)
    return active, dropped


def _fold_missing(
    existing: Mapping[str, E],
    rows: Sequence[InsightRow],
    key: Callable[[InsightRow], str],
    build: Callable[[InsightRow], E],
) -> Mapping[str, E]:
    """New map = existing + one fallback entry per unseen key (first row wins)."""
    filled: Dict[str, E] = dict(existing)
    for row in rows:
        entity_id = key(row)
        if entity_id and entity_id not in filled:
            filled[entity_id] = build(row)
    return MappingProxyType(filled)


def fill_missing_entities(
    index: EntityIndex,
    rows: Sequence[InsightRow],
    fetch_health: Mapping[Collection, bool],
) -> EntityIndex:
    """Return a new index where every active row's ad set and ad resolve."""
    adset_status = fallback_status(fetch_health.get(Collection.adsets, False))
    ad_status = fallback_status(fetch_health.get(Collection.ads, False))

    adsets = _fold_missing(
        index.adsets,
        rows,
        key=lambda row: row.adset_id,
        build=lambda row: AdSet(
            id=row.adset_id,
            name=row.adset_name,
            campaign_id=row.campaign_id,
            status=adset_status,
        ),
    )
    ads = _fold_missing(
        index.ads,
        rows,
        key=lambda row: row.ad_id,
        build=lambda row: Ad(
            id=row.ad_id,
            name=row.ad_name,
            adset_id=row.adset_id,
            status=ad_status,
        ),
    )
    return EntityIndex(campaigns=index.campaigns, adsets=adsets, ads=ads)


def build_roster(index: EntityIndex) -> Mapping[str, AdContext]:
    """Every ad whose ad set and campaign are both indexed."""
    roster: Dict[str, AdContext] = {}
    for ad_id, ad in index.ads.items():
        adset = index.adsets.get(ad.adset_id) if ad.adset_id else None
        if adset is None or not adset.campaign_id:
            continue
        campaign = index.campaigns.get(adset.campaign_id)
        if campaign is None:
            continue
        roster[ad_id] = AdContext(ad=ad, adset=adset, campaign=campaign)
    return MappingProxyType(roster)


def check_entity_completeness(
    rows: Sequence[InsightRow],
    counts: Mapping[Collection, int],
    fetch_health: Mapping[Collection, bool],
    account_id: Optional[str] = None,
) -> None:
    """Raise IncompleteEntityDataError when writing would erase good entity data."""
    if not rows:
        return

    if not fetch_health.get(Collection.campaigns, False):
        raise IncompleteEntityDataError(
            f"Campaign fetch failed while {len(rows)} performance rows exist",
            account_id=account_id,
        )

    empty = tuple(
        collection.value
        for collection in (Collection.campaigns, Collection.adsets, Collection.ads)
        if fetch_health.get(collection, False) and counts.get(collection, 0) == 0
    )
    if empty:
        logger.error(
            "[META_SYNC] Meta returned no %s for %s while %d performance rows exist",
            ", ".join(empty),
            account_id,
            len(rows),
        )
        raise IncompleteEntityDataError(
            f"Meta returned no {', '.join(empty)} while {len(rows)} performance rows exist",
            empty_collections=empty,
            account_id=account_id,
        )


# =============================================================================
# ENTRY POINT
# =============================================================================

def reconcile(
    rows: Sequence[InsightRow],
    campaigns: Sequence[Campaign],
    adsets: Sequence[AdSet],
    ads: Sequence[Ad],
    fetch_health: Mapping[Collection, bool],
    account_id: Optional[str] = None,
) -> ReconcileResult:
    """Reconcile insight rows with the fetched entity collections.

    Args:
        rows: Ad-level daily insight rows for the window
        campaigns / adsets / ads: Entity collections fetched in this run
        fetch_health: Per-collection fetch success
        account_id: Used in error messages and logs only

    Raises:
        IncompleteEntityDataError: Entity data is unsafe to write against
    """
    check_entity_completeness(
        rows,
        {
            Collection.campaigns: len(campaigns),
            Collection.adsets: len(adsets),
            Collection.ads: len(ads),
        },
        fetch_health,
        account_id=account_id,
    )

    index = index_entities(campaigns, adsets, ads)
    active_rows, dropped_rows = drop_orphaned_rows(rows, index.campaigns)
    if dropped_rows:
        logger.info(
            "[META_SYNC] Dropped %d rows from %d deleted/archived campaigns",
            len(dropped_rows),
            len({row.campaign_id for row in dropped_rows}),
        )

    filled = fill_missing_entities(index, active_rows, fetch_health)
    hierarchy = Hierarchy(index=filled, roster=build_roster(filled))

    return ReconcileResult(
        active_rows=active_rows,
        hierarchy=hierarchy,
        dropped_rows=dropped_rows,
    )
