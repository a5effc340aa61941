"""Return items abandoned in ``processing`` to the pending pool."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from .logger import get_logger
from .models import QueueStatus
from .persistence import Persistence
from .prometheus import QueueMetrics

DEFAULT_STUCK_AFTER_SECONDS = 300
DEFAULT_RECLAIM_INTERVAL = 300.0


class StuckItemReclaimer:
    """Periodically reset items whose worker disappeared mid-delivery.

    An item is stuck when it is still ``processing`` and its ``updated_at``
    is strictly older than ``stuck_after`` seconds. Reclaimed items become
    immediately eligible and keep their ``retry_count``.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        metrics: Optional[QueueMetrics] = None,
        stuck_after: int = DEFAULT_STUCK_AFTER_SECONDS,
        interval: float = DEFAULT_RECLAIM_INTERVAL,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.persistence = persistence
        self.metrics = metrics
        self.stuck_after = int(stuck_after)
        self.interval = max(0.0, float(interval))
        self.clock = clock
        self.logger = logger or get_logger("reclaimer")
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def reclaim(self, now_ts: Optional[int] = None) -> int:
        """Reclaim stuck items and return how many were reset."""
        now = int(self.clock()) if now_ts is None else int(now_ts)
        ids = await self.persistence.reclaim_stuck(older_than_ts=now - self.stuck_after, now_ts=now)
        for item_id in ids:
            await self.persistence.log_event(
                item_id,
                "reclaimed",
                f"Returned to {QueueStatus.PENDING.value} after {self.stuck_after}s in {QueueStatus.PROCESSING.value}",
                timestamp=now,
            )
        if ids:
            self.logger.warning("Reclaimed %d stuck queue items", len(ids))
            if self.metrics:
                self.metrics.inc_reclaimed(len(ids))
        return len(ids)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.is_running:
            return False
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop(), name="queue-reclaimer-loop")
        return True

    async def stop(self) -> bool:
        if not self.is_running:
            return False
        self._stop.set()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        return True

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.reclaim()
            except Exception as exc:
                self.logger.exception("Unhandled error in reclaimer cycle: %s", exc)
            try:
                async with asyncio.timeout(self.interval):
                    await self._stop.wait()
            except asyncio.TimeoutError:
                continue
