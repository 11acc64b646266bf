"""Meta Graph API client with cursor pagination.

WHAT:
    Thin async wrapper around the Graph API (httpx) that:
    - Follows `paging.next` cursors across every page of a collection
    - Enforces a hard timeout on each request
    - Backs off on throttling (429 / codes 4, 17, 32, 613), honouring Retry-After
    - Retries timeouts and other API errors a bounded number of times

WHY:
    Meta caps every collection response (500 rows max) and throttles per ad
    account. A fetch that silently stops at the first error would make the
    sync store a truncated window, so every fetch reports whether it reached
    the last page.

NOTES:
    - Requests inside one fetch are strictly sequential with a small delay
      between pages. Concurrency against one account only burns quota faster.
    - An aborted fetch still returns the rows it collected, flagged
      success=False. Callers decide whether those rows are usable.

REFERENCES:
    - https://developers.facebook.com/docs/graph-api/results (pagination)
    - adsync/services/meta_rate_limit.py (retry policies)
    - adsync/services/meta_batch.py (combined entity request)
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from adsync.services.meta_rate_limit import (
    generic_policy,
    is_auth_error,
    parse_retry_after,
    rate_limit_policy,
)
from adsync.services.sync_types import DateWindow

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "v18.0"
GRAPH_HOST = "https://graph.facebook.com"

DEFAULT_REQUEST_TIMEOUT_SECONDS = 20.0
DEFAULT_MAX_PAGES = 50
DEFAULT_MAX_GENERIC_RETRIES = 2
DEFAULT_GENERIC_RETRY_DELAY_SECONDS = 2.0
DEFAULT_MAX_RATE_LIMIT_RETRIES = 3
DEFAULT_RATE_LIMIT_BASE_DELAY_SECONDS = 30.0
DEFAULT_PAGE_DELAY_SECONDS = 0.5
PAGE_LIMIT = 500

INSIGHT_FIELDS = [
    "campaign_name",
    "campaign_id",
    "adset_name",
    "adset_id",
    "ad_name",
    "ad_id",
    "impressions",
    "clicks",
    "spend",
    "actions",
    "action_values",
]

Sleep = Callable[[float], Awaitable[None]]


class FailureKind(str, Enum):
    rate_limited = "rate_limited"
    transient = "transient"
    auth = "auth"


@dataclass
class GraphResponse:
    """Outcome of a single HTTP attempt against the Graph API."""

    status_code: Optional[int]
    body: Any = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None
    retry_after: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.error_message is None

    @property
    def auth_failed(self) -> bool:
        return not self.ok and is_auth_error(self.status_code, self.error_code)


@dataclass
class FetchResult:
    """Every record collected for one logical collection."""

    records: List[Dict[str, Any]] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None
    failure: Optional[FailureKind] = None
    retry_after: Optional[float] = None
    pages: int = 0
    truncated: bool = False


class MetaGraphClient:
    """Async Graph API client used by the sync engine.

    Usage:
        ```python
        async with MetaGraphClient(access_token="EAAB...") as client:
            result = await client.fetch_all(client.insights_url("act_123", window))
            if not result.success:
                ...
        ```
    """

    def __init__(
        self,
        access_token: str,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        api_version: str = DEFAULT_API_VERSION,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        max_rate_limit_retries: int = DEFAULT_MAX_RATE_LIMIT_RETRIES,
        rate_limit_base_delay: float = DEFAULT_RATE_LIMIT_BASE_DELAY_SECONDS,
        generic_retry_delay: float = DEFAULT_GENERIC_RETRY_DELAY_SECONDS,
        page_delay: float = DEFAULT_PAGE_DELAY_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ):
        """Initialize the client.

        Args:
            access_token: Meta user/system-user token
            http_client: Optional shared httpx client (tests inject a MockTransport)
            api_version: Graph API version, e.g. "v18.0"
            request_timeout: Hard per-request timeout in seconds
            max_rate_limit_retries: Throttled retries before a fetch is abandoned
            rate_limit_base_delay: k-th throttled retry waits base * k without Retry-After
            generic_retry_delay: Fixed wait before retrying other failures
            page_delay: Pause between consecutive pages of one collection
            sleep: Awaitable used for every wait (injectable for tests)
        """
        self.access_token = access_token
        self.api_version = api_version
        self.request_timeout = request_timeout
        self.rate_limit_policy = rate_limit_policy(max_rate_limit_retries, rate_limit_base_delay)
        self.generic_retry_delay = generic_retry_delay
        self.page_delay = page_delay
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=request_timeout)

    async def __aenter__(self) -> "MetaGraphClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def base_url(self) -> str:
        return f"{GRAPH_HOST}/{self.api_version}"

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)

    # =========================================================================
    # URL BUILDERS
    # =========================================================================

    def build_url(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Absolute Graph URL for `path` with the access token appended."""
        query = dict(params or {})
        query["access_token"] = self.access_token
        return f"{self.base_url}/{path.lstrip('/')}?{urlencode(query)}"

    def insights_url(self, account_id: str, window: DateWindow) -> str:
        """Ad-level daily insights for every ad in the account over `window`."""
        return self.build_url(
            f"{account_id}/insights",
            {
                "fields": ",".join(INSIGHT_FIELDS),
                "level": "ad",
                "time_increment": 1,
                "limit": PAGE_LIMIT,
                "time_range": json.dumps(
                    {"since": window.start.isoformat(), "until": window.end.isoformat()}
                ),
            },
        )

    # =========================================================================
    # SINGLE ATTEMPT
    # =========================================================================

    async def request_once(
        self,
        method: str,
        url: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> GraphResponse:
        """Issue one request. Never raises for HTTP, transport or JSON problems."""
        try:
            response = await self._client.request(
                method, url, data=data, timeout=self.request_timeout
            )
        except httpx.TimeoutException:
            return GraphResponse(
                status_code=None,
                error_message=f"Request timed out after {self.request_timeout}s",
            )
        except httpx.HTTPError as e:
            return GraphResponse(status_code=None, error_message=f"Network error: {e}")

        retry_after = parse_retry_after(response.headers.get("Retry-After"))

        try:
            body = response.json()
        except ValueError:
            return GraphResponse(
                status_code=response.status_code,
                retry_after=retry_after,
                error_message=f"Malformed JSON response (HTTP {response.status_code})",
            )

        error = body.get("error") if isinstance(body, dict) else None
        if error is not None:
            error = error if isinstance(error, dict) else {"message": str(error)}
            return GraphResponse(
                status_code=response.status_code,
                body=body,
                error_code=_as_int(error.get("code")),
                error_message=error.get("message") or "Unknown Graph API error",
                retry_after=retry_after,
            )

        if response.status_code >= 400:
            return GraphResponse(
                status_code=response.status_code,
                body=body,
                error_message=f"HTTP {response.status_code}",
                retry_after=retry_after,
            )

        return GraphResponse(status_code=response.status_code, body=body, retry_after=retry_after)

    # =========================================================================
    # PAGINATED FETCH
    # =========================================================================

    async def fetch_all(
        self,
        url: str,
        max_pages: int = DEFAULT_MAX_PAGES,
        max_generic_retries: int = DEFAULT_MAX_GENERIC_RETRIES,
    ) -> FetchResult:
        """Fetch every page of a collection starting at `url`.

        Args:
            url: First page URL (or a `paging.next` link to resume from)
            max_pages: Safety limit on pages followed
            max_generic_retries: Retries for non-throttling failures per page

        Returns:
            FetchResult. On abort, `records` holds the pages fetched so far and
            `success` is False with `failure` telling why.
        """
        result = FetchResult()
        retry_policy = generic_policy(max_generic_retries, self.generic_retry_delay)
        cursor: Optional[str] = url
        rate_limit_retries = 0
        generic_retries = 0

        while cursor and result.pages < max_pages:
            response = await self.request_once("GET", cursor)

            if response.ok and not _has_data_list(response.body):
                response.error_message = "Response is missing a data array"

            if not response.ok:
                if response.auth_failed:
                    logger.error("[META_GRAPH] Token rejected: %s", response.error_message)
                    return self._abort(result, FailureKind.auth, response.error_message)

                if self.rate_limit_policy.applies_to(response.status_code, response.error_code):
                    rate_limit_retries += 1
                    if self.rate_limit_policy.exhausted(rate_limit_retries):
                        logger.error(
                            "[META_GRAPH] Rate limit retries exhausted after %d attempts (page %d)",
                            self.rate_limit_policy.max_retries,
                            result.pages + 1,
                        )
                        return self._abort(
                            result,
                            FailureKind.rate_limited,
                            response.error_message,
                            retry_after=self.rate_limit_policy.delay(
                                rate_limit_retries, response.retry_after
                            ),
                        )
                    wait = self.rate_limit_policy.delay(rate_limit_retries, response.retry_after)
                    logger.warning(
                        "[META_GRAPH] Rate limited (HTTP %s, code %s) - waiting %.1fs (attempt %d/%d)",
                        response.status_code,
                        response.error_code,
                        wait,
                        rate_limit_retries,
                        self.rate_limit_policy.max_retries,
                    )
                    await self.sleep(wait)
                    continue

                generic_retries += 1
                if retry_policy.exhausted(generic_retries):
                    logger.error(
                        "[META_GRAPH] Giving up on page %d: %s",
                        result.pages + 1,
                        response.error_message,
                    )
                    return self._abort(result, FailureKind.transient, response.error_message)
                logger.warning(
                    "[META_GRAPH] Request failed (%s), retrying (attempt %d/%d)",
                    response.error_message,
                    generic_retries,
                    retry_policy.max_retries,
                )
                await self.sleep(retry_policy.delay(generic_retries))
                continue

            result.records.extend(response.body["data"])
            result.pages += 1
            rate_limit_retries = 0
            generic_retries = 0

            paging = response.body.get("paging") or {}
            cursor = paging.get("next")
            logger.debug(
                "[META_GRAPH] Fetched page %d, total records: %d",
                result.pages,
                len(result.records),
            )
            if cursor and result.pages < max_pages:
                await self.sleep(self.page_delay)

        if cursor:
            result.truncated = True
            logger.warning(
                "[META_GRAPH] Stopped at max_pages=%d with more pages available (%d records)",
                max_pages,
                len(result.records),
            )

        return result

    def _abort(
        self,
        result: FetchResult,
        failure: FailureKind,
        error: Optional[str],
        retry_after: Optional[float] = None,
    ) -> FetchResult:
        result.success = False
        result.failure = failure
        result.error = error
        result.retry_after = retry_after
        return result


def _has_data_list(body: Any) -> bool:
    return isinstance(body, dict) and isinstance(body.get("data"), list)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
