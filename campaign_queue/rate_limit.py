"""Rate limiter that relies on persisted send logs."""

import time
from typing import Any, Dict, Optional

from .persistence import Persistence

WINDOWS = (
    ("limit_per_minute", 60),
    ("limit_per_hour", 3600),
    ("limit_per_day", 86400),
)


class RateLimiter:
    """Sliding-window limiter built on top of :class:`Persistence`.

    Counters are kept per outbound server in the ``send_log`` table and
    count delivery attempts, not only successful sends.
    """

    def __init__(self, persistence: Persistence):
        """Store the persistence helper used to read and write counters."""
        self.persistence = persistence

    @staticmethod
    def _limit(server: Dict[str, Any], key: str) -> Optional[int]:
        value = server.get(key)
        if value is None:
            return None
        return int(value) if int(value) > 0 else None

    async def exceeded_window(self, server: Dict[str, Any], now_ts: Optional[int] = None) -> Optional[str]:
        """Return the name of the first limit reached, or ``None``."""
        server_id = server["id"]
        now = int(time.time()) if now_ts is None else int(now_ts)
        for key, seconds in WINDOWS:
            limit = self._limit(server, key)
            if limit is None:
                continue
            count = await self.persistence.count_sends_since(server_id, now - seconds)
            if count >= limit:
                return key
        return None

    async def can_send(self, server: Dict[str, Any], now_ts: Optional[int] = None) -> bool:
        """Return ``True`` when no window of the server is saturated."""
        return await self.exceeded_window(server, now_ts) is None

    async def check_and_increment(self, server: Dict[str, Any], now_ts: Optional[int] = None) -> bool:
        """Check the limits and, when allowed, record one attempt."""
        now = int(time.time()) if now_ts is None else int(now_ts)
        if not await self.can_send(server, now):
            return False
        await self.persistence.log_send(server["id"], now)
        return True
