"""Combined entity fetch through the Graph batch endpoint.

WHAT:
    Fetches campaigns, ad sets and ads for one ad account with a single POST
    to the batch endpoint (three GET sub-requests). Each sub-response is
    parsed on its own; continuation cursors are followed with the paginated
    client.

WHY:
    One combined call costs far less rate-limit budget than three paginated
    scans, and entity fetches run on every sync.

FALLBACKS:
    - Combined call throttled: retried with the rate-limit policy, then
      RateLimitExceeded.
    - Combined call malformed / errored / wrong shape: BatchFormatError is
      caught here and the three collections are fetched sequentially.
    - One sub-response failed: only that collection is re-fetched.

REFERENCES:
    - https://developers.facebook.com/docs/graph-api/batch-requests
    - adsync/services/meta_graph_client.py
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from adsync.services.meta_graph_client import (
    DEFAULT_MAX_GENERIC_RETRIES,
    DEFAULT_MAX_PAGES,
    PAGE_LIMIT,
    FailureKind,
    FetchResult,
    MetaGraphClient,
)
from adsync.services.sync_errors import (
    BatchFormatError,
    RateLimitExceeded,
    TokenExpiredError,
)
from adsync.services.sync_types import Ad, AdSet, Campaign, Collection

logger = logging.getLogger(__name__)

DEFAULT_INTER_REQUEST_DELAY_SECONDS = 1.5

# Deleted and archived entities are excluded on purpose: their absence from
# the campaign map is what removes their rows from the window.
ENTITY_STATUS_FILTER = ["ACTIVE", "PAUSED", "CAMPAIGN_PAUSED", "ADSET_PAUSED"]

COLLECTION_ORDER = (Collection.campaigns, Collection.adsets, Collection.ads)

COLLECTION_FIELDS = {
    Collection.campaigns: "id,name,effective_status,daily_budget,lifetime_budget",
    Collection.adsets: "id,name,campaign_id,effective_status,daily_budget,lifetime_budget",
    Collection.ads: "id,name,adset_id,effective_status,creative{id,thumbnail_url,image_url,video_id,image_hash}",
}

COLLECTION_EXTRA_PARAMS = {
    Collection.ads: {"thumbnail_width": 1080, "thumbnail_height": 1080},
}

ENTITY_PARSERS = {
    Collection.campaigns: Campaign.from_api,
    Collection.adsets: AdSet.from_api,
    Collection.ads: Ad.from_api,
}


@dataclass
class EntityHierarchyFetch:
    """Typed entity collections plus per-collection fetch health."""

    campaigns: List[Campaign] = field(default_factory=list)
    adsets: List[AdSet] = field(default_factory=list)
    ads: List[Ad] = field(default_factory=list)
    collection_success: Dict[Collection, bool] = field(default_factory=dict)
    used_fallback: bool = False

    def succeeded(self, collection: Collection) -> bool:
        return self.collection_success.get(collection, False)

    def count(self, collection: Collection) -> int:
        return len(getattr(self, collection.value))


class MetaBatchCoordinator:
    """Fetches the campaign / ad set / ad collections for one account."""

    def __init__(
        self,
        client: MetaGraphClient,
        *,
        max_pages: int = DEFAULT_MAX_PAGES,
        max_generic_retries: int = DEFAULT_MAX_GENERIC_RETRIES,
        inter_request_delay: float = DEFAULT_INTER_REQUEST_DELAY_SECONDS,
    ):
        self.client = client
        self.max_pages = max_pages
        self.max_generic_retries = max_generic_retries
        self.inter_request_delay = inter_request_delay

    # =========================================================================
    # URLS
    # =========================================================================

    def _collection_params(self, collection: Collection) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "fields": COLLECTION_FIELDS[collection],
            "effective_status": json.dumps(ENTITY_STATUS_FILTER),
            "limit": PAGE_LIMIT,
        }
        params.update(COLLECTION_EXTRA_PARAMS.get(collection, {}))
        return params

    def relative_url(self, account_id: str, collection: Collection) -> str:
        """Sub-request path, relative to the API version root (no token)."""
        return f"{account_id}/{collection.value}?{urlencode(self._collection_params(collection))}"

    def collection_url(self, account_id: str, collection: Collection) -> str:
        return self.client.build_url(
            f"{account_id}/{collection.value}", self._collection_params(collection)
        )

    # =========================================================================
    # PUBLIC
    # =========================================================================

    async def fetch_entity_hierarchy(self, account_id: str) -> EntityHierarchyFetch:
        """Fetch all three entity collections for `account_id`.

        Raises:
            RateLimitExceeded: Combined call still throttled after every retry
            TokenExpiredError: Meta rejected the access token
        """
        try:
            sub_responses = await self._send_batch(account_id)
        except BatchFormatError as e:
            logger.warning(
                "[META_BATCH] Batch response unusable for %s (%s), falling back to sequential fetches",
                account_id,
                e.message,
            )
            results = await self._fetch_sequentially(account_id)
            return self._assemble(account_id, results, used_fallback=True)

        results: Dict[Collection, FetchResult] = {}
        for collection, sub_response in zip(COLLECTION_ORDER, sub_responses):
            results[collection] = await self._resolve_sub_response(
                account_id, collection, sub_response
            )
        return self._assemble(account_id, results, used_fallback=False)

    # =========================================================================
    # COMBINED CALL
    # =========================================================================

    async def _send_batch(self, account_id: str) -> List[Any]:
        batch = [
            {"method": "GET", "relative_url": self.relative_url(account_id, collection)}
            for collection in COLLECTION_ORDER
        ]
        payload = {
            "access_token": self.client.access_token,
            "include_headers": "false",
            "batch": json.dumps(batch),
        }
        policy = self.client.rate_limit_policy
        retries = 0

        while True:
            response = await self.client.request_once("POST", f"{self.client.base_url}/", data=payload)

            if not response.ok and policy.applies_to(response.status_code, response.error_code):
                retries += 1
                if policy.exhausted(retries):
                    raise RateLimitExceeded(
                        "Meta API rate limit exceeded while fetching entities",
                        retry_after=policy.delay(retries, response.retry_after),
                        account_id=account_id,
                    )
                wait = policy.delay(retries, response.retry_after)
                logger.warning(
                    "[META_BATCH] Rate limited - waiting %.1fs (attempt %d/%d)",
                    wait,
                    retries,
                    policy.max_retries,
                )
                await self.client.sleep(wait)
                continue

            if response.auth_failed:
                raise TokenExpiredError(
                    "Meta access token was rejected. Please reconnect your account.",
                    account_id=account_id,
                )

            if not response.ok:
                raise BatchFormatError(response.error_message, account_id=account_id)

            body = response.body
            if not isinstance(body, list) or len(body) != len(COLLECTION_ORDER):
                raise BatchFormatError(
                    f"Expected {len(COLLECTION_ORDER)} sub-responses, got {type(body).__name__}",
                    account_id=account_id,
                )
            return body

    async def _resolve_sub_response(
        self,
        account_id: str,
        collection: Collection,
        sub_response: Any,
    ) -> FetchResult:
        body = _parse_sub_body(sub_response)

        if body is None:
            logger.warning(
                "[META_BATCH] Sub-response for %s failed, re-fetching individually",
                collection.value,
            )
            await self.client.sleep(self.inter_request_delay)
            return await self.client.fetch_all(
                self.collection_url(account_id, collection),
                max_pages=self.max_pages,
                max_generic_retries=self.max_generic_retries,
            )

        result = FetchResult(records=list(body["data"]), pages=1)
        next_url = (body.get("paging") or {}).get("next")
        if next_url:
            logger.info("[META_BATCH] Following %s continuation cursor", collection.value)
            await self.client.sleep(self.inter_request_delay)
            more = await self.client.fetch_all(
                next_url,
                max_pages=self.max_pages - 1,
                max_generic_retries=self.max_generic_retries,
            )
            result.records.extend(more.records)
            result.pages += more.pages
            result.success = more.success
            result.failure = more.failure
            result.error = more.error
            result.retry_after = more.retry_after
            result.truncated = more.truncated
        return result

    # =========================================================================
    # FALLBACK
    # =========================================================================

    async def _fetch_sequentially(self, account_id: str) -> Dict[Collection, FetchResult]:
        results: Dict[Collection, FetchResult] = {}
        for collection in COLLECTION_ORDER:
            # Space the calls out; the limiter may be what broke the batch
            await self.client.sleep(self.inter_request_delay)
            results[collection] = await self.client.fetch_all(
                self.collection_url(account_id, collection),
                max_pages=self.max_pages,
                max_generic_retries=self.max_generic_retries,
            )
        return results

    # =========================================================================
    # ASSEMBLY
    # =========================================================================

    def _assemble(
        self,
        account_id: str,
        results: Dict[Collection, FetchResult],
        used_fallback: bool,
    ) -> EntityHierarchyFetch:
        fetch = EntityHierarchyFetch(used_fallback=used_fallback)

        for collection in COLLECTION_ORDER:
            result = results[collection]
            if result.failure == FailureKind.auth:
                raise TokenExpiredError(
                    "Meta access token was rejected. Please reconnect your account.",
                    account_id=account_id,
                )
            if not result.success:
                logger.warning(
                    "[META_BATCH] %s fetch failed (%s): %s, %d partial records kept for enrichment",
                    collection.value,
                    result.failure.value if result.failure else "unknown",
                    result.error,
                    len(result.records),
                )
            setattr(fetch, collection.value, _parse_entities(collection, result.records))
            fetch.collection_success[collection] = result.success

        logger.info(
            "[META_BATCH] Fetched %d campaigns, %d ad sets, %d ads for %s%s",
            len(fetch.campaigns),
            len(fetch.adsets),
            len(fetch.ads),
            account_id,
            " (sequential fallback)" if used_fallback else "",
        )
        return fetch


def _parse_sub_body(sub_response: Any) -> Optional[Dict[str, Any]]:
    """Decode one batch sub-response. None when it failed or cannot be used."""
    if not isinstance(sub_response, dict) or sub_response.get("code") != 200:
        return None
    body = sub_response.get("body")
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError:
            return None
    if not isinstance(body, dict) or "error" in body or not isinstance(body.get("data"), list):
        return None
    return body


def _parse_entities(collection: Collection, records: List[Dict[str, Any]]) -> list:
    parser = ENTITY_PARSERS[collection]
    entities = []
    for record in records:
        if not isinstance(record, dict) or not record.get("id"):
            logger.debug("[META_BATCH] Skipping %s record without id", collection.value)
            continue
        entities.append(parser(record))
    return entities
