from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from vpn_shop.config import settings
from vpn_shop.services.payment_service import PaymentService


logger = logging.getLogger(__name__)


def _header_matches(actual: str, expected: str | None) -> bool:
    if not expected:
        return False
    return hmac.compare_digest(actual.encode("utf-8"), expected.encode("utf-8"))


def _is_authorized(request: Request) -> bool:
    merchant_id = request.headers.get("X-MerchantId", "")
    secret = request.headers.get("X-Secret", "")
    return _header_matches(merchant_id, settings.PLATEGA_MERCHANT_ID) and _header_matches(
        secret, settings.PLATEGA_SECRET
    )


def create_payment_router(payment_service: PaymentService) -> APIRouter:
    router = APIRouter()

    @router.get(settings.PLATEGA_WEBHOOK_PATH)
    async def platega_health() -> JSONResponse:
        return JSONResponse(
            {
                "status": "ok",
                "service": "platega_webhook",
                "enabled": settings.is_platega_enabled(),
            }
        )

    @router.post(settings.PLATEGA_WEBHOOK_PATH)
    async def platega_webhook(request: Request) -> JSONResponse:
        if not _is_authorized(request):
            logger.warning(
                "🚫 Platega postback с неверными заголовками от %s",
                request.client.host if request.client else "unknown",
            )
            return JSONResponse(
                {"status": "error", "reason": "unauthorized"},
                status_code=status.HTTP_401_UNAUTHORIZED,
            )

        try:
            payload = await request.json()
        except ValueError as error:
            logger.warning("⚠️ Platega postback с некорректным телом: %s", error)
            return JSONResponse(
                {"status": "error", "reason": "invalid_json"},
                status_code=status.HTTP_400_BAD_REQUEST,
            )

        if not isinstance(payload, dict):
            return JSONResponse(
                {"status": "error", "reason": "invalid_json"},
                status_code=status.HTTP_400_BAD_REQUEST,
            )

        try:
            success = await payment_service.process_postback(payload)
        except Exception as error:
            logger.exception("Ошибка обработки Platega postback: %s", error)
            success = False

        if success:
            return JSONResponse({"status": "ok"})

        return JSONResponse(
            {"status": "error", "reason": "not_processed"},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    return router
