import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from vpn_shop.database.crud.topup import (
    delete_topup_with_bonuses,
    get_topup_by_id,
    mark_topup_credited,
    transition_topup_status,
)
from vpn_shop.database.crud.user import credit_balance
from vpn_shop.database.database import AsyncSessionLocal
from vpn_shop.database.models import TopUpStatus
from vpn_shop.services.event_bus import (
    EventBus,
    TopUpCredited,
    TopUpFailed,
    TopUpTimedOut,
)

logger = logging.getLogger(__name__)


class CreditStatus(Enum):
    CREDITED = "credited"
    ALREADY_CREDITED = "already_credited"
    NOT_FOUND = "not_found"


class TransitionStatus(Enum):
    CHANGED = "changed"
    ALREADY_PROCESSED = "already_processed"
    NOT_FOUND = "not_found"


@dataclass(slots=True)
class CreditResult:
    status: CreditStatus
    topup_id: int
    user_id: Optional[int] = None
    amount_kopeks: int = 0

    @property
    def credited(self) -> bool:
        return self.status == CreditStatus.CREDITED


@dataclass(slots=True)
class TransitionResult:
    status: TransitionStatus
    topup_id: int
    new_status: Optional[TopUpStatus] = None

    @property
    def changed(self) -> bool:
        return self.status == TransitionStatus.CHANGED


_FAILURE_SOURCES = (TopUpStatus.PENDING, TopUpStatus.TIMEOUT)
_TIMEOUT_SOURCES = (TopUpStatus.PENDING,)


class CreditService:
    """Идемпотентное завершение пополнений и однократное зачисление на баланс.

    Все методы можно вызывать повторно и параллельно: из вебхука, из
    админки и из фоновой очистки. Зачисление защищено условным UPDATE по
    ``credited = false``, баланс меняется только если он сработал.
    """

    def __init__(self, event_bus: EventBus, session_factory: Optional[async_sessionmaker] = None):
        self.event_bus = event_bus
        self._session_factory = session_factory or AsyncSessionLocal

    async def resolve_success(self, topup_id: int) -> CreditResult:
        async with self._session_factory() as db:
            topup = await get_topup_by_id(db, topup_id)
            if not topup:
                await db.commit()
                logger.warning("⚠️ Пополнение #%s не найдено для зачисления", topup_id)
                return CreditResult(CreditStatus.NOT_FOUND, topup_id)

            user_id = topup.user_id
            amount = topup.amount_kopeks

            if topup.credited:
                await db.commit()
                logger.info("ℹ️ Пополнение #%s уже зачислено", topup_id)
                return CreditResult(CreditStatus.ALREADY_CREDITED, topup_id, user_id, amount)

            try:
                if not await mark_topup_credited(db, topup_id):
                    await db.commit()
                    logger.info("ℹ️ Пополнение #%s зачислено параллельным вызовом", topup_id)
                    return CreditResult(CreditStatus.ALREADY_CREDITED, topup_id, user_id, amount)

                if not await credit_balance(db, user_id, amount):
                    raise RuntimeError(f"Пользователь {user_id} пополнения #{topup_id} не найден")

                await db.commit()
            except Exception:
                await db.rollback()
                logger.error("❌ Ошибка зачисления пополнения #%s", topup_id, exc_info=True)
                raise

        logger.info("💰 Пополнение #%s: зачислено %s коп. пользователю %s", topup_id, amount, user_id)
        await self.event_bus.publish(
            TopUpCredited(topup_id=topup_id, user_id=user_id, amount_kopeks=amount)
        )
        return CreditResult(CreditStatus.CREDITED, topup_id, user_id, amount)

    async def _transition(
        self,
        topup_id: int,
        new_status: TopUpStatus,
        allowed_from,
    ) -> TransitionResult:
        async with self._session_factory() as db:
            topup = await get_topup_by_id(db, topup_id)
            if not topup:
                await db.commit()
                logger.warning("⚠️ Пополнение #%s не найдено для перехода в %s", topup_id, new_status.value)
                return TransitionResult(TransitionStatus.NOT_FOUND, topup_id)

            user_id = topup.user_id
            amount = topup.amount_kopeks

            try:
                changed = await transition_topup_status(db, topup_id, new_status, allowed_from)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        if not changed:
            logger.debug("Пополнение #%s уже в финальном статусе, переход в %s пропущен", topup_id, new_status.value)
            return TransitionResult(TransitionStatus.ALREADY_PROCESSED, topup_id)

        logger.info("📉 Пополнение #%s переведено в %s", topup_id, new_status.value)
        event_cls = TopUpTimedOut if new_status == TopUpStatus.TIMEOUT else TopUpFailed
        await self.event_bus.publish(
            event_cls(topup_id=topup_id, user_id=user_id, amount_kopeks=amount)
        )
        return TransitionResult(TransitionStatus.CHANGED, topup_id, new_status)

    async def resolve_failure(self, topup_id: int) -> TransitionResult:
        return await self._transition(topup_id, TopUpStatus.FAILED, _FAILURE_SOURCES)

    async def resolve_timeout(self, topup_id: int) -> TransitionResult:
        return await self._transition(topup_id, TopUpStatus.TIMEOUT, _TIMEOUT_SOURCES)

    async def delete_topup(self, topup_id: int) -> Optional[int]:
        """Удаляет пополнение вместе с зависимыми реферальными бонусами.

        Возвращает число удалённых бонусов или None, если пополнения нет.
        Баланс не корректируется.
        """

        async with self._session_factory() as db:
            topup = await get_topup_by_id(db, topup_id)
            if not topup:
                await db.commit()
                return None

            try:
                removed_bonuses = await delete_topup_with_bonuses(db, topup_id)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info("🗑 Пополнение #%s удалено (бонусов удалено: %s)", topup_id, removed_bonuses)
        return removed_bonuses
