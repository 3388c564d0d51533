import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from vpn_shop.database.crud.subscription import get_user_subscription, get_user_subscriptions
from vpn_shop.database.crud.user import (
    ensure_user_promo_code,
    get_or_create_user,
    get_user_by_id,
)
from vpn_shop.database.database import AsyncSessionLocal
from vpn_shop.database.models import Subscription, User

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UserProfile:
    user_id: int
    telegram_id: int
    balance_kopeks: int
    promo_code: str


class UserService:

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def register_contact(
        self,
        telegram_id: int,
        chat_id: Optional[int] = None,
        account_name: Optional[str] = None,
    ) -> User:
        """Первый (или очередной) контакт: upsert пользователя и бесплатная подписка."""

        async with self._session_factory() as db:
            user, created = await get_or_create_user(db, telegram_id, chat_id, account_name)
        if created:
            logger.info("🆕 Новый пользователь telegram_id=%s", telegram_id)
        return user

    async def get_profile(self, user_id: int) -> Optional[UserProfile]:
        async with self._session_factory() as db:
            user = await get_user_by_id(db, user_id)
            if not user:
                await db.commit()
                return None
            await db.commit()
            promo_code = await ensure_user_promo_code(db, user)
            return UserProfile(
                user_id=user.id,
                telegram_id=user.telegram_id,
                balance_kopeks=user.balance_kopeks,
                promo_code=promo_code,
            )

    async def list_subscriptions(self, user_id: int) -> List[Subscription]:
        async with self._session_factory() as db:
            subscriptions = await get_user_subscriptions(db, user_id)
            await db.commit()
        return subscriptions

    async def get_subscription(self, user_id: int, subscription_id: int) -> Optional[Subscription]:
        async with self._session_factory() as db:
            subscription = await get_user_subscription(db, subscription_id, user_id)
            await db.commit()
        return subscription
