import logging
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup
from sqlalchemy.ext.asyncio import async_sessionmaker

from vpn_shop.config import settings
from vpn_shop.database.crud.user import get_user_by_id
from vpn_shop.database.database import AsyncSessionLocal
from vpn_shop.services.event_bus import (
    EventBus,
    ReferralBonusCredited,
    RenewalDue,
    SubscriptionExpired,
    TopUpCredited,
    TopUpFailed,
    TopUpTimedOut,
)

logger = logging.getLogger(__name__)


def _renew_keyboard(subscription_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="🔄 Продлить", callback_data=f"extend_choose_{subscription_id}")],
            [InlineKeyboardButton(text="💳 Пополнить баланс", callback_data="topup")],
        ]
    )


def _topup_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="💳 Попробовать ещё раз", callback_data="topup")],
        ]
    )


class NotificationService:
    """Превращает доменные события в сообщения пользователям в Telegram."""

    def __init__(
        self,
        bot: Bot,
        event_bus: EventBus,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.bot = bot
        self.event_bus = event_bus
        self._session_factory = session_factory or AsyncSessionLocal

    def register(self) -> None:
        self.event_bus.subscribe(TopUpCredited, self.on_topup_credited)
        self.event_bus.subscribe(TopUpFailed, self.on_topup_failed)
        self.event_bus.subscribe(TopUpTimedOut, self.on_topup_timed_out)
        self.event_bus.subscribe(ReferralBonusCredited, self.on_referral_bonus)
        self.event_bus.subscribe(RenewalDue, self.on_renewal_due)
        self.event_bus.subscribe(SubscriptionExpired, self.on_subscription_expired)

    @staticmethod
    def _is_unreachable_error(error: TelegramBadRequest) -> bool:
        message = str(error).lower()
        unreachable_markers = (
            "chat not found",
            "user is deactivated",
            "bot was blocked by the user",
            "can't initiate conversation",
            "user not found",
            "peer id invalid",
        )
        return any(marker in message for marker in unreachable_markers)

    async def _load_recipient(self, user_id: int):
        async with self._session_factory() as db:
            user = await get_user_by_id(db, user_id)
            await db.commit()
        if not user:
            logger.warning("⚠️ Пользователь %s не найден для уведомления", user_id)
            return None, 0
        chat_id = user.chat_id or user.telegram_id
        return chat_id, user.balance_kopeks

    async def _send(self, chat_id: int, text: str, reply_markup=None, context: str = "") -> bool:
        try:
            await self.bot.send_message(chat_id, text, reply_markup=reply_markup)
            return True
        except TelegramForbiddenError:
            logger.warning("⚠️ Чат %s недоступен (%s): бот заблокирован", chat_id, context)
        except TelegramBadRequest as error:
            if not self._is_unreachable_error(error):
                raise
            logger.warning("⚠️ Чат %s недоступен (%s): %s", chat_id, context, error)
        return False

    async def on_topup_credited(self, event: TopUpCredited) -> None:
        chat_id, balance = await self._load_recipient(event.user_id)
        if chat_id is None:
            return
        text = (
            "✅ Оплата подтверждена!\n"
            f"Сумма: {settings.format_price(event.amount_kopeks)}\n"
            f"Новый баланс: {settings.format_price(balance)}"
        )
        await self._send(chat_id, text, context=f"topup #{event.topup_id}")

    async def on_topup_failed(self, event: TopUpFailed) -> None:
        chat_id, _ = await self._load_recipient(event.user_id)
        if chat_id is None:
            return
        text = (
            "❌ Оплата не прошла.\n"
            f"Сумма: {settings.format_price(event.amount_kopeks)}\n"
            "Если это ошибка, попробуйте ещё раз."
        )
        await self._send(chat_id, text, _topup_keyboard(), context=f"topup #{event.topup_id}")

    async def on_topup_timed_out(self, event: TopUpTimedOut) -> None:
        chat_id, _ = await self._load_recipient(event.user_id)
        if chat_id is None:
            return
        text = (
            "⌛ Время на оплату истекло.\n"
            f"Счёт на {settings.format_price(event.amount_kopeks)} отменён. "
            "Если вы уже оплатили, напишите в поддержку "
            f"{settings.SUPPORT_USERNAME}."
        )
        await self._send(chat_id, text, _topup_keyboard(), context=f"topup #{event.topup_id}")

    async def on_referral_bonus(self, event: ReferralBonusCredited) -> None:
        chat_id, balance = await self._load_recipient(event.code_owner_id)
        if chat_id is None:
            return
        text = (
            "🎉 Реферальный бонус!\n"
            f"Ваш приглашённый пополнил баланс, вам начислено {settings.format_price(event.bonus_amount_kopeks)}.\n"
            f"Баланс: {settings.format_price(balance)}"
        )
        await self._send(chat_id, text, context=f"bonus topup #{event.topup_id}")

    async def on_renewal_due(self, event: RenewalDue) -> None:
        chat_id, _ = await self._load_recipient(event.user_id)
        if chat_id is None:
            return
        days_word = "день" if event.days_left == 1 else "дня"
        text = (
            f"⏳ Подписка #{event.subscription_id} закончится через {event.days_left} {days_word}.\n"
            "Продлите её заранее, чтобы VPN не отключился."
        )
        await self._send(
            chat_id,
            text,
            _renew_keyboard(event.subscription_id),
            context=f"renewal #{event.subscription_id}",
        )

    async def on_subscription_expired(self, event: SubscriptionExpired) -> None:
        chat_id, _ = await self._load_recipient(event.user_id)
        if chat_id is None:
            return
        text = (
            f"🔴 Подписка #{event.subscription_id} закончилась.\n"
            "Продлите её, чтобы снова пользоваться VPN."
        )
        await self._send(
            chat_id,
            text,
            _renew_keyboard(event.subscription_id),
            context=f"expired #{event.subscription_id}",
        )
