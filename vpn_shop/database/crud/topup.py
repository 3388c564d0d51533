import logging
import uuid
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vpn_shop.database.models import ReferralBonus, TopUp, TopUpStatus

logger = logging.getLogger(__name__)


def generate_order_id() -> str:
    return str(uuid.uuid4())


async def create_topup(
    db: AsyncSession,
    user_id: int,
    amount_kopeks: int,
    order_id: Optional[str] = None,
) -> TopUp:
    topup = TopUp(
        user_id=user_id,
        amount_kopeks=amount_kopeks,
        status=TopUpStatus.PENDING.value,
        order_id=order_id or generate_order_id(),
        credited=False,
        created_at=datetime.utcnow(),
    )
    db.add(topup)
    await db.commit()
    await db.refresh(topup)

    logger.info(
        "🧾 Создано пополнение #%s на %s коп. для пользователя %s (order_id=%s)",
        topup.id,
        amount_kopeks,
        user_id,
        topup.order_id,
    )
    return topup


async def get_topup_by_id(db: AsyncSession, topup_id: int) -> Optional[TopUp]:
    result = await db.execute(select(TopUp).where(TopUp.id == topup_id))
    return result.scalar_one_or_none()


async def get_topup_by_order_id(db: AsyncSession, order_id: str) -> Optional[TopUp]:
    result = await db.execute(select(TopUp).where(TopUp.order_id == order_id))
    return result.scalar_one_or_none()


async def get_topup_by_bill_id(db: AsyncSession, bill_id: str) -> Optional[TopUp]:
    result = await db.execute(select(TopUp).where(TopUp.bill_id == bill_id))
    return result.scalars().first()


async def get_user_topup(db: AsyncSession, topup_id: int, user_id: int) -> Optional[TopUp]:
    result = await db.execute(
        select(TopUp).where(TopUp.id == topup_id, TopUp.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def set_topup_payment_details(
    db: AsyncSession,
    topup_id: int,
    bill_id: Optional[str],
    payment_url: Optional[str],
) -> None:
    await db.execute(
        update(TopUp)
        .where(TopUp.id == topup_id)
        .values(bill_id=bill_id, payment_url=payment_url, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def mark_topup_credited(db: AsyncSession, topup_id: int) -> bool:
    """Переводит пополнение в SUCCESS и ставит credited, если оно ещё не зачислено.

    Возвращает True только для вызова, который реально перевёл флаг.
    Коммит на вызывающей стороне.
    """

    now = datetime.utcnow()
    result = await db.execute(
        update(TopUp)
        .where(TopUp.id == topup_id, TopUp.credited.is_(False))
        .values(
            status=TopUpStatus.SUCCESS.value,
            credited=True,
            credited_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def transition_topup_status(
    db: AsyncSession,
    topup_id: int,
    new_status: TopUpStatus,
    allowed_from: Iterable[TopUpStatus],
) -> bool:
    """CAS-переход статуса незачисленного пополнения. Коммит на вызывающей стороне."""

    result = await db.execute(
        update(TopUp)
        .where(
            TopUp.id == topup_id,
            TopUp.credited.is_(False),
            TopUp.status.in_([status.value for status in allowed_from]),
        )
        .values(status=new_status.value, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def get_stale_pending_topups(
    db: AsyncSession,
    older_than_seconds: int,
    now: Optional[datetime] = None,
) -> List[TopUp]:
    threshold = (now or datetime.utcnow()) - timedelta(seconds=older_than_seconds)
    result = await db.execute(
        select(TopUp)
        .where(
            TopUp.status == TopUpStatus.PENDING.value,
            TopUp.created_at < threshold,
        )
        .order_by(TopUp.created_at)
    )
    return list(result.scalars().all())


async def delete_topup_with_bonuses(db: AsyncSession, topup_id: int) -> int:
    """Удаляет реферальные бонусы пополнения и само пополнение. Коммит на вызывающей стороне."""

    bonuses = await db.execute(
        delete(ReferralBonus)
        .where(ReferralBonus.topup_id == topup_id)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(TopUp)
        .where(TopUp.id == topup_id)
        .execution_options(synchronize_session=False)
    )
    return bonuses.rowcount or 0
