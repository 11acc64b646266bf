"""
Meta Sync Exceptions
====================

Error taxonomy for the Meta performance sync engine.

WHY THIS FILE EXISTS
--------------------
The sync engine talks to a quota-constrained upstream API and rewrites a
date window of stored records. Most failures are handled close to the fetch
(retry, backoff, batch fallback). Only the ones that would corrupt stored data
or that exhaust a retry budget reach the caller, and the caller needs to know
whether to retry automatically or ask the user to reconnect.

CATEGORIES
----------
- rate_limited     retryable, carries a suggested wait
- incomplete_data  retryable, entity data was unsafe to write
- token_expired    not retryable, user must reconnect Meta
- generic          everything else

RELATED FILES
-------------
- adsync/services/meta_sync_service.py: Raises these exceptions
- adsync/routers/meta_sync.py: Maps them to HTTP responses
- adsync/workers/arq_worker.py: Records them on failed jobs
"""

from typing import Optional, Tuple


CATEGORY_RATE_LIMITED = "rate_limited"
CATEGORY_INCOMPLETE_DATA = "incomplete_data"
CATEGORY_TOKEN_EXPIRED = "token_expired"
CATEGORY_GENERIC = "generic"


class MetaSyncError(Exception):
    """
    Base exception for all sync engine errors.

    Allows catching every sync failure with one except clause while still
    exposing the category and retryability the caller needs.
    """

    category = CATEGORY_GENERIC
    retryable = True

    def __init__(self, message: str, account_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.account_id = account_id

    def to_user_message(self) -> str:
        return self.message


class RateLimitExceeded(MetaSyncError):
    """
    Rate-limit retry budget exhausted.

    WHAT: Meta kept answering with 429 / throttling error codes after all
          backoff retries were spent.
    WHY:  Surfaced as retryable with the last wait Meta suggested so the
          caller can schedule the next attempt.
    """

    category = CATEGORY_RATE_LIMITED
    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        account_id: Optional[str] = None,
    ):
        super().__init__(message, account_id=account_id)
        self.retry_after = retry_after

    def to_user_message(self) -> str:
        if self.retry_after:
            return f"Meta API rate limit reached. Try again in {int(self.retry_after)} seconds."
        return "Meta API rate limit reached. Try again in a few minutes."


class TransientFetchError(MetaSyncError):
    """Timeout or generic HTTP/network failure that outlived its local retries."""


class TruncatedFetchError(MetaSyncError):
    """
    Performance fetch stopped at the page limit with more pages available.

    Not retryable as-is: the same window hits the same limit again until
    META_MAX_PAGES is raised.
    """

    retryable = False


class BatchFormatError(MetaSyncError):
    """
    Malformed or error-carrying combined batch response.

    Only raised and caught inside the batch coordinator, which falls back to
    sequential collection fetches. Never reaches the caller.
    """


class IncompleteEntityDataError(MetaSyncError):
    """
    Entity collections failed or came back empty while performance rows exist.

    Writing in this state would replace known-good status and budget data with
    fallbacks (or drop every row as "deleted"), so the run stops before any
    write.
    """

    category = CATEGORY_INCOMPLETE_DATA
    retryable = True

    def __init__(
        self,
        message: str,
        empty_collections: Tuple[str, ...] = (),
        account_id: Optional[str] = None,
    ):
        super().__init__(message, account_id=account_id)
        # Collections Meta answered with zero entities; empty for a failed fetch
        self.empty_collections = empty_collections


class WriteFailure(MetaSyncError):
    """A chunk insert failed. The window was cleared and sync state left untouched."""


class TokenExpiredError(MetaSyncError):
    """Meta rejected the access token or it is past its expiry. User must reconnect."""

    category = CATEGORY_TOKEN_EXPIRED
    retryable = False


class ConnectionNotFoundError(TokenExpiredError):
    """No Meta connection stored for the user."""
