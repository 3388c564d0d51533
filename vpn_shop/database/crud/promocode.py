import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vpn_shop.database.models import AdminPromo, AdminPromoActivation

logger = logging.getLogger(__name__)


async def get_admin_promo_by_code(db: AsyncSession, code: str) -> Optional[AdminPromo]:
    result = await db.execute(select(AdminPromo).where(AdminPromo.code == code))
    return result.scalar_one_or_none()


async def get_admin_promo_by_id(db: AsyncSession, promo_id: int) -> Optional[AdminPromo]:
    result = await db.execute(select(AdminPromo).where(AdminPromo.id == promo_id))
    return result.scalar_one_or_none()


async def create_admin_promo(
    db: AsyncSession,
    code: str,
    promo_type: str,
    amount_kopeks: int = 0,
    days: int = 0,
    is_reusable: bool = False,
    custom_name: Optional[str] = None,
) -> AdminPromo:
    promo = AdminPromo(
        code=code,
        type=promo_type,
        amount_kopeks=amount_kopeks,
        days=days,
        is_reusable=is_reusable,
        use_count=0,
        custom_name=custom_name,
        created_at=datetime.utcnow(),
    )
    db.add(promo)
    await db.commit()
    await db.refresh(promo)

    logger.info("🎁 Создан админский промокод %s (%s)", promo.code, promo.type)
    return promo


async def claim_single_use_promo(db: AsyncSession, promo_id: int, user_id: int) -> bool:
    """Занимает одноразовый промокод за пользователем. Коммит на вызывающей стороне."""

    result = await db.execute(
        update(AdminPromo)
        .where(
            AdminPromo.id == promo_id,
            AdminPromo.is_reusable.is_(False),
            AdminPromo.used_by_id.is_(None),
        )
        .values(used_by_id=user_id, used_at=datetime.utcnow(), use_count=AdminPromo.use_count + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_reusable_promo_activation(db: AsyncSession, promo_id: int, user_id: int) -> None:
    """Пишет активацию многоразового промокода; повтор даёт IntegrityError."""

    db.add(
        AdminPromoActivation(
            promo_id=promo_id,
            user_id=user_id,
            created_at=datetime.utcnow(),
        )
    )
    await db.flush()
    await db.execute(
        update(AdminPromo)
        .where(AdminPromo.id == promo_id)
        .values(use_count=AdminPromo.use_count + 1)
        .execution_options(synchronize_session=False)
    )


async def delete_admin_promo(db: AsyncSession, promo_id: int) -> bool:
    await db.execute(
        delete(AdminPromoActivation)
        .where(AdminPromoActivation.promo_id == promo_id)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        delete(AdminPromo)
        .where(AdminPromo.id == promo_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    deleted = result.rowcount == 1
    if deleted:
        logger.info("🗑 Удалён админский промокод #%s", promo_id)
    return deleted
