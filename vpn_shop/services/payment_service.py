"""Создание счетов Platega и разбор их результатов."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from vpn_shop.config import settings
from vpn_shop.database.crud.topup import (
    create_topup,
    get_topup_by_bill_id,
    get_topup_by_id,
    get_topup_by_order_id,
    get_user_topup,
    set_topup_payment_details,
)
from vpn_shop.database.database import AsyncSessionLocal
from vpn_shop.database.models import TopUp, TopUpStatus
from vpn_shop.services.credit_service import CreditService
from vpn_shop.services.platega_service import PlategaService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Invoice:
    topup_id: int
    order_id: str
    amount_kopeks: int
    payment_url: str
    bill_id: Optional[str]
    is_fallback: bool = False


@dataclass(slots=True)
class TopUpState:
    topup_id: int
    status: str
    credited: bool
    amount_kopeks: int


class PaymentService:
    """Счета на пополнение и обработка ответов платёжной системы."""

    _SUCCESS_STATUSES = {"CONFIRMED"}
    _FAILED_STATUSES = {"FAILED", "CANCELED", "EXPIRED"}
    _PENDING_STATUSES = {"PENDING", "INPROGRESS"}

    def __init__(
        self,
        credit_service: CreditService,
        platega_service: Optional[PlategaService] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.credit_service = credit_service
        self.platega_service = platega_service or PlategaService()
        self._session_factory = session_factory or AsyncSessionLocal

    def validate_amount(self, amount_kopeks: int) -> bool:
        if amount_kopeks <= 0:
            return False
        if amount_kopeks < settings.TOPUP_MIN_AMOUNT_KOPEKS:
            logger.warning(
                "Сумма пополнения меньше минимальной: %s < %s",
                amount_kopeks,
                settings.TOPUP_MIN_AMOUNT_KOPEKS,
            )
            return False
        if amount_kopeks > settings.TOPUP_MAX_AMOUNT_KOPEKS:
            logger.warning(
                "Сумма пополнения больше максимальной: %s > %s",
                amount_kopeks,
                settings.TOPUP_MAX_AMOUNT_KOPEKS,
            )
            return False
        return True

    async def create_invoice(
        self,
        user_id: int,
        amount_kopeks: int,
        description: Optional[str] = None,
    ) -> Optional[Invoice]:
        if not self.validate_amount(amount_kopeks):
            return None

        async with self._session_factory() as db:
            topup = await create_topup(db, user_id, amount_kopeks)
            topup_id = topup.id
            order_id = topup.order_id

        payment = None
        if self.platega_service.is_configured:
            callback_url = None
            if settings.PAYMENT_CALLBACK_URL:
                callback_url = f"{settings.PAYMENT_CALLBACK_URL.rstrip('/')}{settings.PLATEGA_WEBHOOK_PATH}"
            try:
                payment = await self.platega_service.create_payment(
                    order_id=order_id,
                    amount_kopeks=amount_kopeks,
                    description=description or f"Пополнение баланса на {settings.format_price(amount_kopeks)}",
                    callback_url=callback_url,
                    payload=str(user_id),
                )
            except Exception as error:
                logger.error("Ошибка Platega при создании счёта %s: %s", order_id, error, exc_info=True)
                payment = None
        else:
            logger.warning("Platega не настроена, выдаём ручную ссылку для %s", order_id)

        if payment and payment.redirect_url:
            redirect_url = payment.redirect_url
            bill_id = payment.transaction_id or order_id
            is_fallback = False
        else:
            if payment is not None:
                logger.error("Platega не вернула ссылку для оплаты заказа %s", order_id)
            bill_id = f"fallback-{order_id}"
            redirect_url = settings.get_manual_payment_url(order_id)
            is_fallback = True

        async with self._session_factory() as db:
            await set_topup_payment_details(db, topup_id, bill_id, redirect_url)

        logger.info(
            "💳 Счёт #%s на %s для пользователя %s%s",
            topup_id,
            settings.format_price(amount_kopeks),
            user_id,
            " (ручная оплата)" if is_fallback else "",
        )

        return Invoice(
            topup_id=topup_id,
            order_id=order_id,
            amount_kopeks=amount_kopeks,
            payment_url=redirect_url,
            bill_id=bill_id,
            is_fallback=is_fallback,
        )

    async def _apply_provider_status(self, topup_id: int, status_raw: str) -> bool:
        if status_raw in self._SUCCESS_STATUSES:
            await self.credit_service.resolve_success(topup_id)
            return True
        if status_raw in self._FAILED_STATUSES:
            await self.credit_service.resolve_failure(topup_id)
            return True
        if status_raw in self._PENDING_STATUSES:
            logger.debug("Пополнение #%s ещё ожидает оплаты (%s)", topup_id, status_raw)
            return True

        logger.warning("Platega: неизвестный статус %s для пополнения #%s", status_raw, topup_id)
        return False

    async def process_postback(self, payload: Dict[str, Any]) -> bool:
        order_id = str(payload.get("id") or "").strip()
        transaction_id = str(payload.get("transactionId") or "").strip()
        status_raw = str(payload.get("status") or "").strip().upper()

        if not status_raw or not (order_id or transaction_id):
            logger.warning("Platega postback без id или статуса: %s", payload)
            return False

        async with self._session_factory() as db:
            topup = None
            if order_id:
                topup = await get_topup_by_order_id(db, order_id)
                if not topup:
                    topup = await get_topup_by_bill_id(db, order_id)
            if not topup and transaction_id:
                topup = await get_topup_by_bill_id(db, transaction_id)
            topup_id = topup.id if topup else None
            await db.commit()

        if topup_id is None:
            logger.warning("Platega postback: пополнение не найдено (id=%s)", order_id or transaction_id)
            return False

        logger.info("📩 Platega postback для пополнения #%s: %s", topup_id, status_raw)
        return await self._apply_provider_status(topup_id, status_raw)

    async def check_topup(self, topup_id: int, user_id: int) -> Optional[TopUpState]:
        """Проверка оплаты по кнопке пользователя; при необходимости опрашивает Platega."""

        async with self._session_factory() as db:
            topup = await get_user_topup(db, topup_id, user_id)
            if not topup:
                await db.commit()
                return None
            status = topup.status
            credited = topup.credited
            bill_id = topup.bill_id
            is_fallback = topup.is_fallback
            await db.commit()

        if status == TopUpStatus.SUCCESS.value and not credited:
            await self.credit_service.resolve_success(topup_id)
        elif (
            status == TopUpStatus.PENDING.value
            and bill_id
            and not is_fallback
            and self.platega_service.is_configured
        ):
            remote_status = await self.platega_service.get_transaction_status(bill_id)
            if remote_status:
                await self._apply_provider_status(topup_id, remote_status)

        async with self._session_factory() as db:
            topup = await get_user_topup(db, topup_id, user_id)
            if not topup:
                await db.commit()
                return None
            state = TopUpState(
                topup_id=topup.id,
                status=topup.status,
                credited=topup.credited,
                amount_kopeks=topup.amount_kopeks,
            )
            await db.commit()
        return state

    async def get_topup(self, topup_id: int) -> Optional[TopUp]:
        async with self._session_factory() as db:
            topup = await get_topup_by_id(db, topup_id)
            await db.commit()
        return topup
