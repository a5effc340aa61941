"""
FastAPI application factory and HTTP schemas for the campaign queue.

The module exposes a `create_app` function that builds the REST API used to
enqueue campaigns, drive the worker and inspect the queue. Authentication is
enforced through a configurable API token carried in the ``X-API-Token``
header.
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Query, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .models import OutboundServerCreate, QueueStatus
from .service import QueueService

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class EnqueuePayload(BaseModel):
    """Recipient lists used by the producer; empty means every active contact."""
    list_ids: List[str] = Field(default_factory=list)


class EnqueueResponse(CommandStatus):
    queued_count: int = 0
    duplicates_skipped: int = 0
    failed: int = 0


class RetryFailedResponse(CommandStatus):
    reset: int = 0


class StatsResponse(CommandStatus):
    campaign_id: str
    counts: Dict[str, int]


class BatchResponse(CommandStatus):
    """Counters of one processed batch."""
    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: int = 0
    errors: int = 0


class WorkerResponse(CommandStatus):
    running: bool
    started: Optional[bool] = None
    stopped: Optional[bool] = None
    reclaimer_running: Optional[bool] = None
    poll_interval: Optional[float] = None
    batch_size: Optional[int] = None


class ReclaimResponse(CommandStatus):
    reclaimed: int = 0


class QueueItemRecord(BaseModel):
    """Queue item as stored, without its HTML body."""
    id: str
    campaign_id: str
    contact_email: str
    contact_name: Optional[str] = None
    subject: str
    message_id: str
    status: str
    retry_count: int
    scheduled_for: int
    sent_at: Optional[int] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    provider_message_id: Optional[str] = None
    created_at: int
    updated_at: int


class QueueResponse(CommandStatus):
    items: List[QueueItemRecord]


class ServerInfo(BaseModel):
    """Outbound server as returned by ``listServers`` (secrets omitted)."""
    id: str
    tenant_id: str
    name: Optional[str] = None
    type: str
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    domain: Optional[str] = None
    encryption: Optional[str] = None
    from_name: str
    from_email: str
    is_active: bool
    limit_per_minute: Optional[int] = None
    limit_per_hour: Optional[int] = None
    limit_per_day: Optional[int] = None
    created_at: Optional[str] = None


class ServersResponse(CommandStatus):
    servers: List[ServerInfo]


class QueueMetricsResponse(CommandStatus):
    counts: Dict[str, int]
    throughput_last_hour: int
    error_rate: float
    last_sent_at: Optional[int] = None


class ServerHealth(BaseModel):
    """Delivery outcomes of one server over the last 24 hours."""
    server_id: str
    name: Optional[str] = None
    total_sent: int
    total_failed: int
    success_rate: float
    is_healthy: bool
    is_active: bool
    last_used: Optional[int] = None


class ServerMetricsResponse(CommandStatus):
    servers: List[ServerHealth]


def _raise_for_error(result: Dict[str, Any]) -> None:
    if result.get("ok") is True:
        return
    error = str(result.get("error") or "command failed")
    code = status.HTTP_404_NOT_FOUND if "not found" in error else status.HTTP_400_BAD_REQUEST
    raise HTTPException(status_code=code, detail=error)


def create_app(
    svc: QueueService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`campaign_queue.service.QueueService` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    service = svc
    api = FastAPI(title="Campaign Queue", lifespan=lifespan)
    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_endpoint():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @api.post("/campaigns/{campaign_id}/enqueue", response_model=EnqueueResponse, dependencies=[auth_dependency])
    async def enqueue_campaign(campaign_id: str, payload: EnqueuePayload | None = None):
        """Expand the campaign into pending queue items."""
        list_ids = payload.list_ids if payload else []
        result = await service.handle_command("enqueueCampaign", {"campaign_id": campaign_id, "list_ids": list_ids})
        _raise_for_error(result)
        return EnqueueResponse.model_validate(result)

    @api.post("/campaigns/{campaign_id}/retry-failed", response_model=RetryFailedResponse, dependencies=[auth_dependency])
    async def retry_failed(campaign_id: str):
        """Reset the failed items of a campaign to pending."""
        result = await service.handle_command("retryFailed", {"campaign_id": campaign_id})
        _raise_for_error(result)
        return RetryFailedResponse.model_validate(result)

    @api.get("/campaigns/{campaign_id}/stats", response_model=StatsResponse, dependencies=[auth_dependency])
    async def campaign_stats(campaign_id: str):
        result = await service.handle_command("campaignStats", {"campaign_id": campaign_id})
        _raise_for_error(result)
        return StatsResponse.model_validate(result)

    @api.get("/queue", response_model=QueueResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_queue(
        campaign_id: Optional[str] = None,
        status_filter: Optional[QueueStatus] = Query(default=None, alias="status"),
        limit: int = Query(default=100, ge=1, le=1000),
    ):
        """Expose queue items, newest first."""
        payload: Dict[str, Any] = {"campaign_id": campaign_id, "limit": limit}
        if status_filter is not None:
            payload["status"] = status_filter.value
        result = await service.handle_command("listQueue", payload)
        _raise_for_error(result)
        return QueueResponse.model_validate(result)

    @router.post("/process-batch", response_model=BatchResponse, response_model_exclude_none=True)
    async def process_batch():
        """Run one worker cycle synchronously and report its counters."""
        try:
            result = await service.handle_command("processBatch", {})
        except Exception as exc:
            return BatchResponse(ok=False, error=str(exc))
        return BatchResponse.model_validate(result)

    @router.post("/start-worker", response_model=WorkerResponse, response_model_exclude_none=True)
    async def start_worker():
        result = await service.handle_command("startWorker", {})
        return WorkerResponse.model_validate(result)

    @router.post("/stop-worker", response_model=WorkerResponse, response_model_exclude_none=True)
    async def stop_worker():
        result = await service.handle_command("stopWorker", {})
        return WorkerResponse.model_validate(result)

    @router.get("/worker-status", response_model=WorkerResponse, response_model_exclude_none=True)
    async def worker_status():
        result = await service.handle_command("workerStatus", {})
        return WorkerResponse.model_validate(result)

    @router.post("/reclaim", response_model=ReclaimResponse, response_model_exclude_none=True)
    async def reclaim():
        """Return stuck processing items to pending right away."""
        result = await service.handle_command("reclaim", {})
        return ReclaimResponse.model_validate(result)

    @api.post("/servers", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_server(server: OutboundServerCreate):
        """Register or update an outbound server definition."""
        result = await service.handle_command("addServer", server.model_dump())
        _raise_for_error(result)
        return BasicOkResponse.model_validate(result)

    @api.get("/servers", response_model=ServersResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_servers(tenant_id: Optional[str] = None):
        """List the outbound servers known by the queue."""
        result = await service.handle_command("listServers", {"tenant_id": tenant_id})
        return ServersResponse.model_validate(result)

    @api.delete("/servers/{server_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def delete_server(server_id: str):
        """Remove an outbound server and its rate-limit history."""
        result = await service.handle_command("deleteServer", {"id": server_id})
        _raise_for_error(result)
        return BasicOkResponse.model_validate(result)

    @api.get("/queue/metrics", response_model=QueueMetricsResponse, dependencies=[auth_dependency])
    async def queue_metrics(campaign_id: Optional[str] = None, tenant_id: Optional[str] = None):
        """Dashboard figures, optionally restricted to a campaign or a tenant."""
        result = await service.handle_command("queueMetrics", {"campaign_id": campaign_id, "tenant_id": tenant_id})
        _raise_for_error(result)
        return QueueMetricsResponse.model_validate(result)

    @api.get("/servers/metrics", response_model=ServerMetricsResponse, dependencies=[auth_dependency])
    async def server_metrics(tenant_id: Optional[str] = None):
        result = await service.handle_command("serverMetrics", {"tenant_id": tenant_id})
        return ServerMetricsResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the queue."""
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
