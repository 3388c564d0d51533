import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from vpn_shop.config import settings
from vpn_shop.database.crud.referral import (
    create_referral_bonus,
    get_referral_activation_by_activator,
    get_referral_stats,
    referral_bonus_exists,
)
from vpn_shop.database.crud.topup import get_topup_by_id
from vpn_shop.database.crud.user import credit_balance
from vpn_shop.database.database import AsyncSessionLocal
from vpn_shop.database.models import TopUpStatus
from vpn_shop.services.event_bus import EventBus, ReferralBonusCredited, TopUpCredited

logger = logging.getLogger(__name__)


class BonusStatus(Enum):
    CREDITED = "credited"
    ALREADY_PROCESSED = "already_processed"
    NO_ACTIVATION = "no_activation"
    NOT_ELIGIBLE = "not_eligible"
    TOO_SMALL = "too_small"
    NOT_FOUND = "not_found"


@dataclass(slots=True)
class BonusResult:
    status: BonusStatus
    topup_id: int
    code_owner_id: Optional[int] = None
    bonus_amount_kopeks: int = 0


def calculate_referral_bonus(amount_kopeks: int, percent: Optional[int] = None) -> int:
    percent = settings.REFERRAL_BONUS_PERCENT if percent is None else percent
    return amount_kopeks * percent // 100


class ReferralBonusService:
    """Начисление владельцу реферального кода процента с пополнений приглашённого."""

    def __init__(self, event_bus: EventBus, session_factory: Optional[async_sessionmaker] = None):
        self.event_bus = event_bus
        self._session_factory = session_factory or AsyncSessionLocal

    def register(self) -> None:
        self.event_bus.subscribe(TopUpCredited, self.handle_topup_credited)

    async def handle_topup_credited(self, event: TopUpCredited) -> None:
        await self.process_referral_bonus(event.topup_id)

    async def process_referral_bonus(self, topup_id: int) -> BonusResult:
        async with self._session_factory() as db:
            topup = await get_topup_by_id(db, topup_id)
            if not topup:
                await db.commit()
                return BonusResult(BonusStatus.NOT_FOUND, topup_id)

            if topup.status != TopUpStatus.SUCCESS.value or not topup.credited:
                await db.commit()
                logger.debug("Пополнение #%s не зачислено, бонус не положен", topup_id)
                return BonusResult(BonusStatus.NOT_ELIGIBLE, topup_id)

            activator_id = topup.user_id
            amount = topup.amount_kopeks

            activation = await get_referral_activation_by_activator(db, activator_id)
            if not activation:
                await db.commit()
                return BonusResult(BonusStatus.NO_ACTIVATION, topup_id)

            owner_id = activation.code_owner_id

            if await referral_bonus_exists(db, topup_id, owner_id, activator_id):
                await db.commit()
                logger.info("ℹ️ Бонус за пополнение #%s уже начислен", topup_id)
                return BonusResult(BonusStatus.ALREADY_PROCESSED, topup_id, owner_id)

            bonus = calculate_referral_bonus(amount)
            if bonus <= 0:
                await db.commit()
                logger.info("ℹ️ Пополнение #%s слишком мало для бонуса", topup_id)
                return BonusResult(BonusStatus.TOO_SMALL, topup_id, owner_id)

            try:
                await create_referral_bonus(db, owner_id, activator_id, topup_id, amount, bonus)
                await credit_balance(db, owner_id, bonus)
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("ℹ️ Бонус за пополнение #%s уже записан параллельно", topup_id)
                return BonusResult(BonusStatus.ALREADY_PROCESSED, topup_id, owner_id)
            except Exception:
                await db.rollback()
                logger.error("❌ Ошибка начисления реферального бонуса за #%s", topup_id, exc_info=True)
                raise

        logger.info(
            "🎉 Реферальный бонус %s коп. начислен пользователю %s за пополнение #%s",
            bonus,
            owner_id,
            topup_id,
        )
        await self.event_bus.publish(
            ReferralBonusCredited(
                code_owner_id=owner_id,
                activator_id=activator_id,
                topup_id=topup_id,
                bonus_amount_kopeks=bonus,
            )
        )
        return BonusResult(BonusStatus.CREDITED, topup_id, owner_id, bonus)

    async def get_referral_stats(self, code_owner_id: int) -> dict:
        async with self._session_factory() as db:
            stats = await get_referral_stats(db, code_owner_id)
            await db.commit()
        return stats
