"""ASGI application entry point for uvicorn.

Usage:
    uvicorn campaign_queue.server:create_server_app --factory --host 0.0.0.0 --port 8000

Configuration is read by :func:`campaign_queue.config.load_settings`.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config import load_settings, service_kwargs
from .service import QueueService


def build_app(settings: dict[str, object]) -> FastAPI:
    """Create the queue service and the application that starts and stops it."""
    service = QueueService(**service_kwargs(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the queue service."""
        await service.start()
        yield
        await service.stop()

    return create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)


def create_server_app() -> FastAPI:
    """Factory used by ``uvicorn --factory``."""
    return build_app(load_settings())
