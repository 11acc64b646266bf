"""Meta rate-limit classification and retry policies.

WHAT:
    - is_rate_limited / is_auth_error: pure predicates over an HTTP status and
      the numeric Graph API error code.
    - RetryPolicy: one immutable policy object (max retries, backoff function,
      classifier) shared by the rate-limit and the generic retry paths.

WHY:
    Every Graph call site used to carry its own retry loop with its own
    constants. Centralizing the policy keeps the backoff bound identical for
    paginated fetches and the combined batch call.

REFERENCES:
    - https://developers.facebook.com/docs/graph-api/overview/rate-limiting
    - adsync/services/meta_graph_client.py
    - adsync/services/meta_batch.py
"""

from dataclasses import dataclass
from typing import Callable, Optional

# Graph API throttling codes:
#   4   application request limit reached
#   17  user request limit reached
#   32  page request limit reached
#   613 calls within one hour exceeded
RATE_LIMIT_ERROR_CODES = frozenset({4, 17, 32, 613})

# 190 = OAuthException (expired / revoked token)
AUTH_ERROR_CODES = frozenset({190})


def is_rate_limited(http_status: Optional[int], error_code: Optional[int]) -> bool:
    """Return True when Meta is throttling us."""
    if http_status == 429:
        return True
    return error_code in RATE_LIMIT_ERROR_CODES


def is_auth_error(http_status: Optional[int], error_code: Optional[int]) -> bool:
    """Return True when the access token is no longer accepted."""
    if http_status == 401:
        return True
    return error_code in AUTH_ERROR_CODES


def _always(http_status: Optional[int], error_code: Optional[int]) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy.

    Attributes:
        name: Label used in log lines
        max_retries: Retries allowed after the first attempt
        backoff: Maps the 1-based retry number to a wait in seconds
        classifier: Decides whether a failure falls under this policy
    """

    name: str
    max_retries: int
    backoff: Callable[[int], float]
    classifier: Callable[[Optional[int], Optional[int]], bool] = _always

    def applies_to(self, http_status: Optional[int], error_code: Optional[int]) -> bool:
        return self.classifier(http_status, error_code)

    def exhausted(self, retry_number: int) -> bool:
        """True once `retry_number` is past the budget."""
        return retry_number > self.max_retries

    def delay(self, retry_number: int, retry_hint: Optional[float] = None) -> float:
        """Wait before the given retry. A provider hint always wins."""
        if retry_hint is not None:
            return retry_hint
        return self.backoff(retry_number)


def rate_limit_policy(max_retries: int, base_delay: float) -> RetryPolicy:
    """Linear backoff: the k-th retry waits `base_delay * k` unless Meta sends Retry-After."""
    return RetryPolicy(
        name="rate_limit",
        max_retries=max_retries,
        backoff=lambda k: base_delay * k,
        classifier=is_rate_limited,
    )


def generic_policy(max_retries: int, delay: float) -> RetryPolicy:
    """Fixed short delay for timeouts, network errors and non-throttling API errors."""
    return RetryPolicy(
        name="generic",
        max_retries=max_retries,
        backoff=lambda k: delay,
    )


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds. Returns None when absent or unusable."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds
