"""Orchestration of the campaign queue components."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from .health import HEALTH_WINDOW_SECONDS, server_health
from .logger import get_logger
from .models import (
    CampaignCreate,
    ContactCreate,
    ContactListCreate,
    OutboundServerCreate,
    QueueStatus,
)
from .persistence import Persistence
from .producer import QueueProducer
from .prometheus import QueueMetrics
from .rate_limit import RateLimiter
from .reclaimer import DEFAULT_RECLAIM_INTERVAL, DEFAULT_STUCK_AFTER_SECONDS, StuckItemReclaimer
from .retry import DEFAULT_MAX_ATTEMPTS, RetryPolicy
from .transports import DeliveryTransport, TransportRouter
from .worker import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_DEFERRAL_SECONDS,
    DEFAULT_ITEM_DELAY,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_SEND_TIMEOUT,
    QueueWorker,
)

THROUGHPUT_WINDOW_SECONDS = 3600
DEFAULT_POOL_CLEANUP_INTERVAL = 150.0


class QueueService:
    """Coordinate the producer, the worker loop, the reclaimer and the store."""

    def __init__(
        self,
        *,
        db_path: str | None = "/data/campaign_queue.db",
        logger=None,
        metrics: QueueMetrics | None = None,
        transport: DeliveryTransport | None = None,
        start_active: bool = False,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        item_delay: float = DEFAULT_ITEM_DELAY,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        deferral_seconds: int = DEFAULT_DEFERRAL_SECONDS,
        reclaim_interval: float = DEFAULT_RECLAIM_INTERVAL,
        stuck_after: int = DEFAULT_STUCK_AFTER_SECONDS,
        pool_cleanup_interval: float = DEFAULT_POOL_CLEANUP_INTERVAL,
        log_delivery_activity: bool = False,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Prepare the runtime collaborators."""
        self.logger = logger or get_logger("service")
        self.persistence = Persistence(db_path or ":memory:")
        self.rate_limiter = RateLimiter(self.persistence)
        self.metrics = metrics or QueueMetrics()
        self.transport = transport or TransportRouter()
        self.clock = clock
        self._start_active = bool(start_active)
        self.pool_cleanup_interval = max(0.0, float(pool_cleanup_interval))
        self._cleanup_stop = asyncio.Event()
        self._cleanup_task: Optional[asyncio.Task] = None

        self.worker = QueueWorker(
            self.persistence,
            self.transport,
            self.rate_limiter,
            metrics=self.metrics,
            retry_policy=RetryPolicy(max_attempts=max_attempts),
            batch_size=batch_size,
            poll_interval=poll_interval,
            item_delay=item_delay,
            send_timeout=send_timeout,
            deferral_seconds=deferral_seconds,
            clock=clock,
            sleep=sleep,
            log_delivery_activity=log_delivery_activity,
            logger=logger,
        )
        self.reclaimer = StuckItemReclaimer(
            self.persistence,
            metrics=self.metrics,
            stuck_after=stuck_after,
            interval=reclaim_interval,
            clock=clock,
            logger=logger,
        )
        self.producer = QueueProducer(
            self.persistence,
            on_enqueued=self._on_enqueued,
            clock=clock,
            logger=logger,
        )

    def _now(self) -> int:
        return int(self.clock())

    async def init(self) -> None:
        """Create the schema and publish the initial pending gauge."""
        await self.persistence.init_db()
        await self._refresh_queue_gauge()

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Initialise storage and launch the background loops."""
        self.logger.debug("Starting QueueService...")
        await self.init()
        self.reclaimer.start()
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_stop.clear()
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="transport-cleanup-loop")
        if self._start_active:
            self.worker.start()

    async def stop(self) -> None:
        """Stop the loops after their current cycle and release connections."""
        await self.worker.stop()
        await self.reclaimer.stop()
        if self._cleanup_task is not None:
            self._cleanup_stop.set()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None
        await self.transport.cleanup()

    async def _cleanup_loop(self) -> None:
        """Periodically close pooled connections that are idle or orphaned."""
        while not self._cleanup_stop.is_set():
            try:
                async with asyncio.timeout(self.pool_cleanup_interval):
                    await self._cleanup_stop.wait()
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.transport.cleanup()
            except Exception as exc:
                self.logger.exception("Transport cleanup failed: %s", exc)

    async def _on_enqueued(self) -> None:
        if not self.worker.start():
            self.worker.wake()

    async def _refresh_queue_gauge(self) -> None:
        try:
            counts = await self.persistence.count_by_status()
        except Exception:
            self.logger.exception("Failed to refresh queue gauge")
            return
        self.metrics.set_pending(counts[QueueStatus.PENDING.value])

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload if isinstance(payload, dict) else {}
        try:
            return await self._dispatch(cmd, payload)
        except (ValueError, ValidationError) as exc:
            return {"ok": False, "error": str(exc)}

    async def _dispatch(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "enqueueCampaign":
            campaign_id = payload.get("campaign_id")
            if not campaign_id:
                return {"ok": False, "error": "missing 'campaign_id'"}
            result = await self.producer.enqueue(campaign_id, payload.get("list_ids") or [])
            self.metrics.inc_enqueued(result.queued_count, result.duplicates_skipped)
            await self._refresh_queue_gauge()
            return {"ok": True, **result.as_dict()}
        if cmd == "processBatch":
            try:
                result = await self.worker.run_once()
            finally:
                await self.transport.release()
            return {"ok": True, **result.as_dict()}
        if cmd == "startWorker":
            started = self.worker.start()
            return {"ok": True, "running": True, "started": started}
        if cmd == "stopWorker":
            stopped = await self.worker.stop()
            return {"ok": True, "running": False, "stopped": stopped}
        if cmd == "workerStatus":
            return {
                "ok": True,
                "running": self.worker.is_running,
                "reclaimer_running": self.reclaimer.is_running,
                "poll_interval": self.worker.poll_interval,
                "batch_size": self.worker.batch_size,
            }
        if cmd == "reclaim":
            reclaimed = await self.reclaimer.reclaim()
            await self._refresh_queue_gauge()
            return {"ok": True, "reclaimed": reclaimed}
        if cmd == "retryFailed":
            campaign_id = payload.get("campaign_id")
            if not campaign_id:
                return {"ok": False, "error": "missing 'campaign_id'"}
            reset = await self.persistence.retry_failed(campaign_id, self._now())
            self.logger.info("Reset %d failed items of campaign %s", reset, campaign_id)
            if reset and self.worker.is_running:
                self.worker.wake()
            await self._refresh_queue_gauge()
            return {"ok": True, "reset": reset}
        if cmd == "campaignStats":
            campaign_id = payload.get("campaign_id")
            if not campaign_id:
                return {"ok": False, "error": "missing 'campaign_id'"}
            await self.persistence.get_campaign(campaign_id)
            counts = await self.persistence.count_by_status(campaign_id)
            return {"ok": True, "campaign_id": campaign_id, "counts": counts}
        if cmd == "listQueue":
            items = await self.persistence.list_queue_items(
                campaign_id=payload.get("campaign_id"),
                status=payload.get("status"),
                limit=payload.get("limit"),
            )
            return {"ok": True, "items": items}
        if cmd == "queueMetrics":
            metrics = await self.queue_metrics(payload.get("campaign_id"), payload.get("tenant_id"))
            return {"ok": True, **metrics}
        if cmd == "serverMetrics":
            servers = await self.server_metrics(payload.get("tenant_id"))
            return {"ok": True, "servers": servers}
        if cmd == "addServer":
            server = OutboundServerCreate.model_validate(payload)
            await self.persistence.add_server(server.model_dump())
            return {"ok": True}
        if cmd == "listServers":
            servers = await self.persistence.list_servers(payload.get("tenant_id"))
            return {"ok": True, "servers": servers}
        if cmd == "deleteServer":
            server_id = payload.get("id")
            if not server_id:
                return {"ok": False, "error": "missing 'id'"}
            removed = await self.persistence.delete_server(server_id)
            if not removed:
                return {"ok": False, "error": f"Server '{server_id}' not found"}
            return {"ok": True}
        if cmd == "addCampaign":
            await self.persistence.add_campaign(CampaignCreate.model_validate(payload).model_dump())
            return {"ok": True}
        if cmd == "addContact":
            await self.persistence.add_contact(ContactCreate.model_validate(payload).model_dump())
            return {"ok": True}
        if cmd == "addContactList":
            await self.persistence.add_contact_list(ContactListCreate.model_validate(payload).model_dump())
            return {"ok": True}
        if cmd == "addListMember":
            list_id = payload.get("list_id")
            contact_id = payload.get("contact_id")
            if not list_id or not contact_id:
                return {"ok": False, "error": "missing 'list_id' or 'contact_id'"}
            await self.persistence.add_list_member(list_id, contact_id)
            return {"ok": True}
        return {"ok": False, "error": "unknown command"}

    async def queue_metrics(
        self, campaign_id: Optional[str] = None, tenant_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Return dashboard figures: status counts, hourly throughput and error rate."""
        now = self._now()
        counts = await self.persistence.count_by_status(campaign_id, tenant_id)
        sent = counts[QueueStatus.SENT.value]
        failed = counts[QueueStatus.FAILED.value]
        processed = sent + failed
        return {
            "counts": counts,
            "throughput_last_hour": await self.persistence.count_sent_since(
                now - THROUGHPUT_WINDOW_SECONDS, campaign_id, tenant_id
            ),
            "error_rate": (failed / processed) * 100 if processed else 0.0,
            "last_sent_at": await self.persistence.last_sent_at(campaign_id, tenant_id),
        }

    async def server_metrics(self, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return 24h delivery health for every outbound server, active or not."""
        servers = await self.persistence.list_servers(tenant_id)
        stats = await self.persistence.server_delivery_stats(self._now() - HEALTH_WINDOW_SECONDS, tenant_id)
        report = []
        for server in servers:
            health = server_health(server, stats.get(server["id"]))
            health["is_active"] = server["is_active"]
            report.append(health)
        return report
