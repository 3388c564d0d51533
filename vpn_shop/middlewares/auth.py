import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from aiogram import BaseMiddleware
from aiogram.types import CallbackQuery, Message, TelegramObject, User as TgUser

from vpn_shop.config import settings
from vpn_shop.services.user_service import UserService

logger = logging.getLogger(__name__)


def _account_name(user: TgUser) -> str:
    if user.username:
        return user.username
    return (user.full_name or str(user.id))[:255]


def _chat_id(event: TelegramObject, user: TgUser) -> int:
    if isinstance(event, Message):
        return event.chat.id
    if isinstance(event, CallbackQuery) and event.message is not None:
        return event.message.chat.id
    return user.id


class AuthMiddleware(BaseMiddleware):
    """Регистрирует пользователя при каждом контакте и кладёт его в data['db_user']."""

    def __init__(self, user_service: Optional[UserService] = None):
        self.user_service = user_service or UserService()

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        user: Optional[TgUser] = None
        if isinstance(event, (Message, CallbackQuery)):
            user = event.from_user

        if not user or user.is_bot:
            return await handler(event, data)

        try:
            db_user = await self.user_service.register_contact(
                telegram_id=user.id,
                chat_id=_chat_id(event, user),
                account_name=_account_name(user),
            )
        except Exception as e:
            logger.error("❌ Ошибка регистрации пользователя %s: %s", user.id, e, exc_info=True)
            if isinstance(event, CallbackQuery):
                await event.answer("❌ Сервис временно недоступен", show_alert=True)
            elif isinstance(event, Message):
                await event.answer("❌ Сервис временно недоступен, попробуйте позже")
            return None

        data["db_user"] = db_user
        data["is_admin"] = settings.is_admin(user.id)
        return await handler(event, data)
