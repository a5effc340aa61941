"""Exponential backoff policy for failed delivery attempts."""

from __future__ import annotations

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_SECONDS = 60


class RetryPolicy:
    """Decide when a failed item is retried and when it becomes terminal.

    After the n-th failure (``retry_count == n``) the next attempt is
    scheduled ``2 ** n`` minutes later; once ``retry_count`` reaches
    ``max_attempts`` the item fails for good.
    """

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS, base_seconds: int = DEFAULT_BASE_SECONDS):
        self.max_attempts = max(1, int(max_attempts))
        self.base_seconds = max(1, int(base_seconds))

    def delay_seconds(self, retry_count: int) -> int:
        """Return the backoff for an item that has failed ``retry_count`` times."""
        return (2 ** max(0, int(retry_count))) * self.base_seconds

    def is_exhausted(self, retry_count: int) -> bool:
        """Return ``True`` when no further attempt is allowed."""
        return int(retry_count) >= self.max_attempts

    def next_attempt_ts(self, retry_count: int, now_ts: int) -> int:
        """Return the epoch second of the next attempt."""
        return int(now_ts) + self.delay_seconds(retry_count)
