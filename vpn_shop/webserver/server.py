from __future__ import annotations

import asyncio
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI

from vpn_shop.config import settings


logger = logging.getLogger(__name__)


class WebAPIServer:
    """Асинхронный uvicorn-сервер для postback и административного API."""

    def __init__(self, app: FastAPI) -> None:
        self._app = app
        self._config = uvicorn.Config(
            app=self._app,
            host=settings.WEB_HOST,
            port=int(settings.WEB_PORT or 8080),
            log_level=settings.LOG_LEVEL.lower(),
            lifespan="on",
        )
        self._server = uvicorn.Server(self._config)
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._task and not self._task.done():
            logger.info("🌐 Веб-сервер уже запущен")
            return

        async def _serve() -> None:
            try:
                await self._server.serve()
            except Exception as error:  # pragma: no cover - логируем ошибки сервера
                logger.exception("❌ Ошибка работы веб-сервера: %s", error)

        logger.info("🌐 Запуск веб-сервера на %s:%s", settings.WEB_HOST, settings.WEB_PORT)
        self._task = asyncio.create_task(_serve(), name="web-server")

        while not self._server.started:
            if self._task.done():
                break
            await asyncio.sleep(0.1)

    async def stop(self) -> None:
        if not self._task:
            return

        logger.info("🛑 Остановка веб-сервера")
        self._server.should_exit = True
        await self._task
        self._task = None
