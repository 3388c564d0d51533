import functools
import logging
from typing import Any, Callable, Optional

from aiogram import types
from aiogram.exceptions import TelegramBadRequest

from vpn_shop.config import settings

logger = logging.getLogger(__name__)

ACCESS_DENIED_TEXT = "⛔ Недостаточно прав"
ERROR_TEXT = "❌ Произошла ошибка. Попробуйте позже."


def admin_required(func: Callable) -> Callable:

    @functools.wraps(func)
    async def wrapper(event: types.TelegramObject, *args, **kwargs) -> Any:
        user = None
        if isinstance(event, (types.Message, types.CallbackQuery)):
            user = event.from_user

        if not user or not settings.is_admin(user.id):
            try:
                if isinstance(event, types.Message):
                    await event.answer(ACCESS_DENIED_TEXT)
                elif isinstance(event, types.CallbackQuery):
                    await event.answer(ACCESS_DENIED_TEXT, show_alert=True)
            except TelegramBadRequest as e:
                if "query is too old" not in str(e).lower():
                    raise
                logger.warning("Устаревший callback от %s", user.id if user else "Unknown")

            logger.warning("Попытка доступа к админской функции от %s", user.id if user else "Unknown")
            return None

        return await func(event, *args, **kwargs)

    return wrapper


def error_handler(func: Callable) -> Callable:

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Any:
        try:
            return await func(*args, **kwargs)
        except TelegramBadRequest as e:
            error_message = str(e).lower()

            if "query is too old" in error_message or "query id is invalid" in error_message:
                logger.warning("🕐 Игнорируем устаревший запрос в %s: %s", func.__name__, e)
                return None

            if "message is not modified" in error_message:
                logger.debug("📝 Сообщение не изменено в %s", func.__name__)
                event = _extract_event(args)
                if isinstance(event, types.CallbackQuery):
                    await _safe_answer(event)
                return None

            logger.error("Telegram API error в %s: %s", func.__name__, e)
            await _send_error_message(args)
        except Exception as e:
            logger.error("Ошибка в %s: %s", func.__name__, e, exc_info=True)
            await _send_error_message(args)
        return None

    return wrapper


def _extract_event(args) -> Optional[types.TelegramObject]:
    for arg in args:
        if isinstance(arg, (types.Message, types.CallbackQuery)):
            return arg
    return None


async def _safe_answer(callback: types.CallbackQuery, text: Optional[str] = None) -> None:
    try:
        await callback.answer(text, show_alert=bool(text))
    except TelegramBadRequest as e:
        if "query is too old" not in str(e).lower():
            logger.error("Ошибка при ответе на callback: %s", e)


async def _send_error_message(args) -> None:
    event = _extract_event(args)
    if event is None:
        return
    try:
        if isinstance(event, types.Message):
            await event.answer(ERROR_TEXT)
        else:
            await _safe_answer(event, ERROR_TEXT)
    except TelegramBadRequest as e:
        logger.error("Не удалось отправить сообщение об ошибке: %s", e)
