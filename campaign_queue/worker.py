"""Queue worker: claims due items and drives them to a terminal state.

The same state machine serves two deployment shapes:

* a long-lived loop (:meth:`QueueWorker.start` / :meth:`QueueWorker.stop`)
  polling every ``poll_interval`` seconds, each cycle awaited to completion
  before the next one is scheduled;
* a one-shot batch invocation (:meth:`QueueWorker.run_once`) that processes
  exactly one batch and returns a :class:`BatchResult`.

Items of a batch are delivered sequentially with ``item_delay`` seconds
between them so that provider throttling is not tripped.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .health import HEALTH_WINDOW_SECONDS, rank_servers
from .logger import get_logger
from .models import SEND_ERROR, SMTP_TIMEOUT, QueueStatus
from .persistence import Persistence
from .prometheus import QueueMetrics
from .rate_limit import RateLimiter
from .retry import RetryPolicy
from .transports import DeliveryResult, DeliveryTransport, OutboundMessage

DEFAULT_BATCH_SIZE = 5
DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_ITEM_DELAY = 1.0
DEFAULT_SEND_TIMEOUT = 30.0
DEFAULT_DEFERRAL_SECONDS = 600


class ServerConfigurationError(RuntimeError):
    """Raised when no usable outbound server can be resolved for an item."""

    def __init__(self, message: str = "No active outbound server configured"):
        super().__init__(message)
        self.code = SEND_ERROR


@dataclass
class BatchResult:
    """Counters describing one processed batch."""

    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: int = 0
    errors: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class QueueWorker:
    """Poll the queue store, enforce rate limits and call the transport."""

    def __init__(
        self,
        persistence: Persistence,
        transport: DeliveryTransport,
        rate_limiter: RateLimiter,
        *,
        metrics: Optional[QueueMetrics] = None,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        item_delay: float = DEFAULT_ITEM_DELAY,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        deferral_seconds: int = DEFAULT_DEFERRAL_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        log_delivery_activity: bool = False,
        logger=None,
    ):
        self.persistence = persistence
        self.transport = transport
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = max(1, int(batch_size))
        self.poll_interval = max(0.0, float(poll_interval))
        self.item_delay = max(0.0, float(item_delay))
        self.send_timeout = float(send_timeout)
        self.deferral_seconds = int(deferral_seconds)
        self.clock = clock
        self.sleep = sleep
        self.logger = logger or get_logger("worker")
        self._log_delivery_activity = bool(log_delivery_activity)

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def _now(self) -> int:
        return int(self.clock())

    # ----------------------------------------------------------------- lifecycle
    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the polling loop; return ``False`` when it was already running."""
        if self.is_running:
            return False
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop(), name="queue-worker-loop")
        self.logger.info("Queue worker started (interval=%ss, batch=%d)", self.poll_interval, self.batch_size)
        return True

    async def stop(self) -> bool:
        """Stop the loop after the cycle in progress completes.

        An in-flight send is never aborted.
        """
        if not self.is_running:
            return False
        self._stop.set()
        self._wake_event.set()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        self.logger.info("Queue worker stopped")
        return True

    def wake(self) -> None:
        """Skip the remaining wait and run the next cycle immediately."""
        self._wake_event.set()

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.process_batch()
            except Exception as exc:
                self.logger.exception("Unhandled error in queue worker cycle: %s", exc)
            await self._wait_for_wakeup(self.poll_interval)

    async def _wait_for_wakeup(self, timeout: float) -> None:
        """Pause the loop while allowing external wake-ups."""
        if self._stop.is_set():
            return
        if math.isinf(timeout):
            await self._wake_event.wait()
        else:
            try:
                async with asyncio.timeout(timeout):
                    await self._wake_event.wait()
            except asyncio.TimeoutError:
                return
        self._wake_event.clear()

    # ------------------------------------------------------------- batch logic
    async def run_once(self) -> BatchResult:
        """Process exactly one batch; store errors propagate to the caller."""
        return await self.process_batch()

    async def process_batch(self) -> BatchResult:
        """Claim up to ``batch_size`` due items and deliver them one by one."""
        now_ts = self._now()
        due = await self.persistence.fetch_due_items(limit=self.batch_size, now_ts=now_ts)
        result = BatchResult()
        if not due:
            await self._refresh_pending_gauge()
            return result

        claimed: List[Dict[str, Any]] = []
        for item in due:
            if await self.persistence.claim_item(item["id"], now_ts):
                claimed.append(item)
            else:
                result.skipped += 1
        self.logger.debug("Claimed %d of %d due items", len(claimed), len(due))

        servers: Dict[str, List[Dict[str, Any]]] = {}
        for index, item in enumerate(claimed):
            if index and self.item_delay:
                await self.sleep(self.item_delay)
            try:
                outcome = await self._process_item(item["id"], servers)
            except Exception as exc:
                result.errors += 1
                self.logger.exception("Failed to process queue item %s: %s", item["id"], exc)
                continue
            if outcome == "skipped":
                result.skipped += 1
                continue
            result.processed += 1
            setattr(result, outcome, getattr(result, outcome) + 1)

        await self._refresh_pending_gauge()
        if result.processed:
            self.logger.info(
                "Batch done: %d processed, %d sent, %d retried, %d failed, %d deferred",
                result.processed,
                result.sent,
                result.retried,
                result.failed,
                result.deferred,
            )
        return result

    async def _process_item(self, item_id: str, servers: Dict[str, List[Dict[str, Any]]]) -> str:
        """Drive one claimed item; return the name of the outcome counter."""
        item = await self.persistence.get_queue_item(item_id)
        if item is None or item["status"] != QueueStatus.PROCESSING.value:
            self.logger.debug("Queue item %s no longer owned, skipping", item_id)
            return "skipped"

        now_ts = self._now()
        try:
            candidates = await self._resolve_servers(item["campaign_id"], servers, now_ts)
        except ServerConfigurationError as exc:
            return await self._record_failure(item, None, DeliveryResult.failure(str(exc), exc.code))

        server = None
        for candidate in candidates:
            if await self.rate_limiter.check_and_increment(candidate, now_ts):
                server = candidate
                break
        if server is None:
            return await self._defer(item, candidates[0], now_ts)

        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery of %s to %s via %s", item_id, item["contact_email"], server["id"]
            )
        message = OutboundMessage(
            to=item["contact_email"],
            subject=item["subject"],
            html=item["html_content"],
            message_id=item["message_id"],
            to_name=item.get("contact_name"),
        )
        try:
            async with asyncio.timeout(self.send_timeout):
                outcome = await self.transport.send(message, server)
        except asyncio.TimeoutError:
            outcome = DeliveryResult.failure(
                f"Delivery timed out after {self.send_timeout:g}s", SMTP_TIMEOUT
            )
        except Exception as exc:
            outcome = DeliveryResult.failure(str(exc) or exc.__class__.__name__, SEND_ERROR)

        if outcome.success:
            return await self._record_success(item, server, outcome)
        return await self._record_failure(item, server, outcome)

    async def _resolve_servers(
        self, campaign_id: str, servers: Dict[str, List[Dict[str, Any]]], now_ts: int
    ) -> List[Dict[str, Any]]:
        """Return the active servers of the campaign's tenant, healthy ones first.

        Results are cached per batch in ``servers``.
        """
        if campaign_id in servers:
            return servers[campaign_id]
        try:
            campaign = await self.persistence.get_campaign(campaign_id)
        except ValueError as exc:
            raise ServerConfigurationError(str(exc)) from exc
        tenant_id = campaign.get("tenant_id")
        active = await self.persistence.list_active_servers(tenant_id)
        if not active:
            raise ServerConfigurationError(f"No active outbound server for tenant '{tenant_id}'")
        stats = await self.persistence.server_delivery_stats(now_ts - HEALTH_WINDOW_SECONDS, tenant_id)
        servers[campaign_id] = rank_servers(active, stats)
        return servers[campaign_id]

    # -------------------------------------------------------------- transitions
    async def _record_success(self, item: Dict[str, Any], server: Dict[str, Any], outcome: DeliveryResult) -> str:
        sent_ts = self._now()
        updated = await self.persistence.mark_sent(item["id"], sent_ts, outcome.provider_message_id)
        if not updated:
            self.logger.warning("Queue item %s changed state during delivery", item["id"])
        await self.persistence.log_event(
            item["id"],
            QueueStatus.SENT.value,
            f"Delivered to {item['contact_email']} (attempt {item['retry_count'] + 1})",
            server_id=server["id"],
            timestamp=sent_ts,
        )
        if self.metrics:
            self.metrics.inc_sent(server["id"])
        if self._log_delivery_activity:
            self.logger.info("Delivery succeeded for %s (server=%s)", item["id"], server["id"])
        return "sent"

    async def _record_failure(
        self, item: Dict[str, Any], server: Optional[Dict[str, Any]], outcome: DeliveryResult
    ) -> str:
        now_ts = self._now()
        server_id = server["id"] if server else None
        retry_count = int(item["retry_count"]) + 1
        error_code = outcome.error_code or SEND_ERROR
        error_message = outcome.error_message or "Delivery failed"

        if self.retry_policy.is_exhausted(retry_count):
            await self.persistence.mark_failed(
                item["id"],
                retry_count=retry_count,
                error_code=error_code,
                error_message=error_message,
                now_ts=now_ts,
            )
            await self.persistence.log_event(
                item["id"],
                QueueStatus.FAILED.value,
                f"{error_code}: {error_message} (giving up after {retry_count} attempts)",
                server_id=server_id,
                timestamp=now_ts,
            )
            if self.metrics:
                self.metrics.inc_failed(server_id)
            self.logger.error(
                "Queue item %s failed permanently after %d attempts: %s", item["id"], retry_count, error_message
            )
            return "failed"

        next_ts = self.retry_policy.next_attempt_ts(retry_count, now_ts)
        await self.persistence.schedule_retry(
            item["id"],
            retry_count=retry_count,
            scheduled_for=next_ts,
            error_code=error_code,
            error_message=error_message,
            now_ts=now_ts,
        )
        await self.persistence.log_event(
            item["id"],
            "retry",
            f"{error_code}: {error_message} (attempt {retry_count}/{self.retry_policy.max_attempts})",
            server_id=server_id,
            timestamp=now_ts,
        )
        if self.metrics:
            self.metrics.inc_retried(server_id)
        self.logger.warning(
            "Delivery of %s failed (attempt %d/%d): %s - retrying in %ds",
            item["id"],
            retry_count,
            self.retry_policy.max_attempts,
            error_message,
            next_ts - now_ts,
        )
        return "retried"

    async def _defer(self, item: Dict[str, Any], server: Dict[str, Any], now_ts: int) -> str:
        scheduled_for = now_ts + self.deferral_seconds
        await self.persistence.defer_item(item["id"], scheduled_for=scheduled_for, now_ts=now_ts)
        await self.persistence.log_event(
            item["id"],
            "deferred",
            f"Rate limit reached on server {server['id']}, rescheduled in {self.deferral_seconds}s",
            server_id=server["id"],
            timestamp=now_ts,
        )
        if self.metrics:
            self.metrics.inc_deferred(server["id"])
        self.logger.info("Queue item %s deferred by rate limit on %s", item["id"], server["id"])
        return "deferred"

    async def _refresh_pending_gauge(self) -> None:
        if not self.metrics:
            return
        try:
            counts = await self.persistence.count_by_status()
        except Exception:
            self.logger.exception("Failed to refresh pending gauge")
            return
        self.metrics.set_pending(counts.get(QueueStatus.PENDING.value, 0))
