from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from vpn_shop.config import settings
from vpn_shop.database.database import health_check
from vpn_shop.services.container import ServiceContainer

from . import admin_api
from . import payments


logger = logging.getLogger(__name__)


def create_unified_app(services: ServiceContainer) -> FastAPI:
    app = FastAPI(
        title="VPN Shop Server",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url=None,
    )

    app.state.services = services

    app.include_router(payments.create_payment_router(services.payments))

    if settings.ADMIN_API_TOKEN:
        app.include_router(admin_api.create_admin_router())
        logger.info("🔑 Административное API подключено")
    else:
        logger.info("Административное API отключено: ADMIN_API_TOKEN не задан")

    @app.get("/health")
    async def unified_health() -> JSONResponse:
        database_state = await health_check()
        healthy = database_state.get("status") == "healthy"
        return JSONResponse(
            {
                "status": "ok" if healthy else "degraded",
                "database": database_state,
                "platega_enabled": settings.is_platega_enabled(),
                "payment_webhook_path": settings.PLATEGA_WEBHOOK_PATH,
                "admin_api_enabled": bool(settings.ADMIN_API_TOKEN),
                "monitoring_running": services.monitoring.is_running,
            },
            status_code=200 if healthy else 503,
        )

    return app
