"""FastAPI application factory for the webhook gateway."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from channelhub.core.logging import configure_logging

from .dependencies import close_dependencies, get_settings
from .routers import meta, tiktok, whatsapp

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Create and configure the webhook gateway app."""

    settings = get_settings()
    configure_logging()
    if settings.webhooks.allow_unsigned and not settings.allow_unsigned_webhooks:
        logger.warning(
            "unsigned webhooks requested outside development; flag ignored",
            extra={"environment": settings.environment.value},
        )
    elif settings.allow_unsigned_webhooks:
        logger.warning(
            "unsigned webhooks accepted; never enable this in production",
            extra={"environment": settings.environment.value},
        )

    app = FastAPI(title="Channel Hub Webhook Gateway", version=settings.app_version)

    app.include_router(meta.router)
    app.include_router(whatsapp.router)
    app.include_router(tiktok.router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await close_dependencies()

    return app
