import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from vpn_shop.database.models import PromoActivation, ReferralBonus

logger = logging.getLogger(__name__)


async def get_referral_activation_by_activator(
    db: AsyncSession,
    activator_id: int,
) -> Optional[PromoActivation]:
    result = await db.execute(
        select(PromoActivation).where(PromoActivation.activator_id == activator_id)
    )
    return result.scalar_one_or_none()


async def create_referral_activation(
    db: AsyncSession,
    code_owner_id: int,
    activator_id: int,
) -> PromoActivation:
    """Коммит на вызывающей стороне; повтор упирается в уникальный activator_id."""

    activation = PromoActivation(
        code_owner_id=code_owner_id,
        activator_id=activator_id,
        created_at=datetime.utcnow(),
    )
    db.add(activation)
    await db.flush()
    return activation


async def referral_bonus_exists(
    db: AsyncSession,
    topup_id: int,
    code_owner_id: int,
    activator_id: int,
) -> bool:
    result = await db.execute(
        select(ReferralBonus.id).where(
            ReferralBonus.topup_id == topup_id,
            ReferralBonus.code_owner_id == code_owner_id,
            ReferralBonus.activator_id == activator_id,
        )
    )
    return result.first() is not None


async def create_referral_bonus(
    db: AsyncSession,
    code_owner_id: int,
    activator_id: int,
    topup_id: int,
    amount_kopeks: int,
    bonus_amount_kopeks: int,
) -> ReferralBonus:
    now = datetime.utcnow()
    bonus = ReferralBonus(
        code_owner_id=code_owner_id,
        activator_id=activator_id,
        topup_id=topup_id,
        amount_kopeks=amount_kopeks,
        bonus_amount_kopeks=bonus_amount_kopeks,
        credited=True,
        credited_at=now,
        created_at=now,
    )
    db.add(bonus)
    await db.flush()
    return bonus


async def get_referral_stats(db: AsyncSession, code_owner_id: int) -> dict:
    bonus_row = (
        await db.execute(
            select(
                func.count(ReferralBonus.id),
                func.coalesce(func.sum(ReferralBonus.bonus_amount_kopeks), 0),
                func.coalesce(func.sum(ReferralBonus.amount_kopeks), 0),
            ).where(
                ReferralBonus.code_owner_id == code_owner_id,
                ReferralBonus.credited.is_(True),
            )
        )
    ).one()

    activations = (
        await db.execute(
            select(func.count(PromoActivation.id)).where(
                PromoActivation.code_owner_id == code_owner_id
            )
        )
    ).scalar_one()

    return {
        "activations": int(activations or 0),
        "bonuses_count": int(bonus_row[0] or 0),
        "total_bonus_kopeks": int(bonus_row[1] or 0),
        "total_referred_topups_kopeks": int(bonus_row[2] or 0),
    }
