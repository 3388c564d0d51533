"""HTTP-клиент Platega: выставление счёта и запрос статуса транзакции."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from vpn_shop.config import settings

logger = logging.getLogger(__name__)

DESCRIPTION_MAX_BYTES = 64
RETRYABLE_STATUSES = frozenset({500, 502, 503, 504})


@dataclass(slots=True)
class PlategaPayment:
    redirect_url: Optional[str]
    transaction_id: Optional[str]
    status: Optional[str] = None


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Обрезает строку по байтам, не разрывая многобайтовые символы."""

    encoded = (text or "").strip().encode("utf-8")
    if len(encoded) <= max_bytes:
        return encoded.decode("utf-8")
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


class PlategaService:
    """Счета Platega. Сетевые ошибки и 5xx повторяются, результат None означает сбой."""

    def __init__(self, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self.base_url = (settings.PLATEGA_BASE_URL or "https://app.platega.io").rstrip("/")
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._timeout = aiohttp.ClientTimeout(total=30, connect=10)

    @property
    def is_configured(self) -> bool:
        return settings.is_platega_enabled()

    def _headers(self) -> Dict[str, str]:
        return {
            "X-MerchantId": settings.PLATEGA_MERCHANT_ID or "",
            "X-Secret": settings.PLATEGA_SECRET or "",
            "Content-Type": "application/json",
        }

    async def create_payment(
        self,
        order_id: str,
        amount_kopeks: int,
        description: str,
        callback_url: Optional[str] = None,
        payload: Optional[str] = None,
    ) -> Optional[PlategaPayment]:
        body: Dict[str, Any] = {
            "id": order_id,
            "paymentMethod": settings.PLATEGA_PAYMENT_METHOD,
            "paymentDetails": {
                "amount": round(amount_kopeks / 100, 2),
                "currency": settings.PLATEGA_CURRENCY,
            },
            "description": truncate_utf8(description, DESCRIPTION_MAX_BYTES),
        }
        return_url = settings.get_platega_return_url()
        if return_url:
            body["return"] = return_url
        failed_url = settings.get_platega_failed_url()
        if failed_url:
            body["failedUrl"] = failed_url
        if callback_url:
            body["callbackUrl"] = callback_url
        if payload:
            body["payload"] = payload

        data = await self._request("POST", "/transaction/process", body=body)
        if not data:
            return None

        return PlategaPayment(
            redirect_url=data.get("redirect"),
            transaction_id=str(data.get("transactionId") or data.get("id") or "") or None,
            status=data.get("status"),
        )

    async def get_transaction_status(self, transaction_id: str) -> Optional[str]:
        data = await self._request("GET", f"/transaction/{transaction_id}")
        if not data:
            return None
        status = str(data.get("status") or "").strip().upper()
        return status or None

    async def _request(
        self,
        method: str,
        endpoint: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        if not self.is_configured:
            logger.error("Platega не настроена, запрос %s %s пропущен", method, endpoint)
            return None

        url = f"{self.base_url}{endpoint}"

        async with aiohttp.ClientSession(timeout=self._timeout, headers=self._headers()) as session:
            for attempt in range(1, self.max_attempts + 1):
                last_attempt = attempt == self.max_attempts
                try:
                    async with session.request(method, url, json=body) as response:
                        if response.status in RETRYABLE_STATUSES and not last_attempt:
                            logger.warning(
                                "Platega %s %s: HTTP %s, попытка %s/%s",
                                method,
                                endpoint,
                                response.status,
                                attempt,
                                self.max_attempts,
                            )
                            await asyncio.sleep(self.retry_delay * attempt)
                            continue

                        if response.status >= 400:
                            logger.error(
                                "❌ Platega %s %s: HTTP %s %s",
                                method,
                                endpoint,
                                response.status,
                                await response.text(),
                            )
                            return None

                        data = await response.json(content_type=None)
                        if not isinstance(data, dict):
                            logger.error("❌ Platega вернула неожиданный ответ: %s", data)
                            return None
                        return data

                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as error:
                    if last_attempt:
                        logger.error(
                            "❌ Platega %s %s не ответила за %s попыток: %s",
                            method,
                            endpoint,
                            self.max_attempts,
                            error,
                        )
                        return None
                    logger.warning(
                        "Platega %s %s: %s, попытка %s/%s",
                        method,
                        endpoint,
                        error,
                        attempt,
                        self.max_attempts,
                    )
                    await asyncio.sleep(self.retry_delay * attempt)

        return None
