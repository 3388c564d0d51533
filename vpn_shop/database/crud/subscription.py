import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vpn_shop.database.models import Subscription, SubscriptionType

logger = logging.getLogger(__name__)

NOTIFICATION_FLAGS = ("notified_3_days", "notified_1_day")


async def create_subscription(
    db: AsyncSession,
    user_id: int,
    subscription_type: str,
    start_date: datetime,
    end_date: Optional[datetime],
) -> Subscription:
    """Добавляет подписку в текущую транзакцию. Коммит на вызывающей стороне."""

    subscription = Subscription(
        user_id=user_id,
        type=subscription_type,
        start_date=start_date,
        end_date=end_date,
        notified_3_days=False,
        notified_1_day=False,
    )
    db.add(subscription)
    await db.flush()
    return subscription


async def get_subscription_by_id(db: AsyncSession, subscription_id: int) -> Optional[Subscription]:
    result = await db.execute(select(Subscription).where(Subscription.id == subscription_id))
    return result.scalar_one_or_none()


async def get_user_subscription(
    db: AsyncSession,
    subscription_id: int,
    user_id: int,
) -> Optional[Subscription]:
    """Подписка с проверкой владельца: чужая подписка неотличима от отсутствующей."""

    result = await db.execute(
        select(Subscription).where(
            Subscription.id == subscription_id,
            Subscription.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def get_user_subscriptions(db: AsyncSession, user_id: int) -> List[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.id)
    )
    return list(result.scalars().all())


async def set_subscription_urls(
    db: AsyncSession,
    subscription_id: int,
    subscription_url: Optional[str],
    subscription_url_2: Optional[str],
) -> None:
    values = {}
    if subscription_url:
        values["subscription_url"] = subscription_url
    if subscription_url_2:
        values["subscription_url_2"] = subscription_url_2
    if not values:
        return

    values["updated_at"] = datetime.utcnow()
    await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def extend_subscription_period(
    db: AsyncSession,
    subscription_id: int,
    expected_end_date: datetime,
    new_end_date: datetime,
) -> bool:
    """Сдвигает конец подписки и сбрасывает флаги напоминаний.

    Срабатывает только если конец подписки не поменялся с момента чтения,
    иначе False. Коммит на вызывающей стороне.
    """

    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.end_date == expected_end_date,
        )
        .values(
            end_date=new_end_date,
            notified_3_days=False,
            notified_1_day=False,
            last_expired_reminder_at=None,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def claim_notification_flag(
    db: AsyncSession,
    subscription_id: int,
    flag: str,
    expected_end_date: datetime,
) -> bool:
    """Захват флага напоминания для периода, который заканчивается expected_end_date.

    Если подписку успели продлить, период уже другой и флаг не трогается.
    """

    if flag not in NOTIFICATION_FLAGS:
        raise ValueError(f"Неизвестный флаг уведомления: {flag}")

    column = getattr(Subscription, flag)
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.end_date == expected_end_date,
            column.is_(False),
        )
        .values({flag: True})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def claim_expired_reminder(
    db: AsyncSession,
    subscription_id: int,
    expected_end_date: datetime,
    interval_days: int,
    now: Optional[datetime] = None,
) -> bool:
    now = now or datetime.utcnow()
    threshold = now - timedelta(days=interval_days)
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.end_date == expected_end_date,
            or_(
                Subscription.last_expired_reminder_at.is_(None),
                Subscription.last_expired_reminder_at <= threshold,
            ),
        )
        .values(last_expired_reminder_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def get_reminder_candidates(db: AsyncSession) -> List[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.end_date.is_not(None),
            Subscription.type != SubscriptionType.FREE.value,
        )
        .order_by(Subscription.end_date)
    )
    return list(result.scalars().all())
