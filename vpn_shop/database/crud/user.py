import logging
import secrets
import string
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vpn_shop.database.models import Subscription, SubscriptionType, User

logger = logging.getLogger(__name__)

PROMO_CODE_ALPHABET = string.ascii_uppercase + string.digits
PROMO_CODE_LENGTH = 8
PROMO_CODE_ATTEMPTS = 10


def generate_promo_code(length: int = PROMO_CODE_LENGTH) -> str:
    return ''.join(secrets.choice(PROMO_CODE_ALPHABET) for _ in range(length))


async def get_user_by_id(db: AsyncSession, user_id: int) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_telegram_id(db: AsyncSession, telegram_id: int) -> Optional[User]:
    result = await db.execute(select(User).where(User.telegram_id == telegram_id))
    return result.scalar_one_or_none()


async def get_user_by_promo_code(db: AsyncSession, promo_code: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.promo_code == promo_code))
    return result.scalar_one_or_none()


async def get_user_balance(db: AsyncSession, user_id: int) -> Optional[int]:
    result = await db.execute(select(User.balance_kopeks).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_or_create_user(
    db: AsyncSession,
    telegram_id: int,
    chat_id: Optional[int] = None,
    account_name: Optional[str] = None,
) -> Tuple[User, bool]:
    """Возвращает пользователя по telegram_id, создавая его при первом контакте.

    Новый пользователь создаётся вместе с бесплатной подпиской в одной
    транзакции. Параллельная вставка того же telegram_id упирается в
    уникальный индекс, после чего пользователь перечитывается.
    """

    user = await get_user_by_telegram_id(db, telegram_id)
    if user:
        if chat_id is not None and user.chat_id != chat_id:
            user.chat_id = chat_id
        if account_name and user.account_name != account_name:
            user.account_name = account_name
        await db.commit()
        return user, False

    user = User(
        telegram_id=telegram_id,
        chat_id=chat_id,
        account_name=account_name,
        balance_kopeks=0,
    )
    db.add(user)

    try:
        await db.flush()
        db.add(
            Subscription(
                user_id=user.id,
                type=SubscriptionType.FREE.value,
                start_date=datetime.utcnow(),
                end_date=None,
            )
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("🔁 Пользователь %s уже создан параллельным запросом", telegram_id)
        user = await get_user_by_telegram_id(db, telegram_id)
        if user is None:
            raise
        return user, False

    await db.refresh(user)
    logger.info("👤 Создан пользователь %s (telegram_id=%s)", user.id, telegram_id)
    return user, True


async def ensure_user_promo_code(db: AsyncSession, user: User) -> str:
    if user.promo_code:
        return user.promo_code

    user_id = user.id
    for _ in range(PROMO_CODE_ATTEMPTS):
        code = generate_promo_code()
        try:
            result = await db.execute(
                update(User)
                .where(User.id == user_id, User.promo_code.is_(None))
                .values(promo_code=code)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.debug("Коллизия промокода %s, повторяем", code)
            continue

        if result.rowcount == 1:
            user.promo_code = code
            logger.info("🎟 Пользователю %s выдан промокод %s", user_id, code)
            return code

        await db.refresh(user)
        if user.promo_code:
            return user.promo_code

    raise RuntimeError(f"Не удалось сгенерировать уникальный промокод для пользователя {user_id}")


async def debit_balance_if_sufficient(db: AsyncSession, user_id: int, amount_kopeks: int) -> bool:
    """Списывает сумму только если баланса хватает. Коммит на вызывающей стороне."""

    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.balance_kopeks >= amount_kopeks)
        .values(balance_kopeks=User.balance_kopeks - amount_kopeks)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def credit_balance(db: AsyncSession, user_id: int, amount_kopeks: int) -> bool:
    """Зачисляет сумму на баланс. Коммит на вызывающей стороне."""

    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(balance_kopeks=User.balance_kopeks + amount_kopeks)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
