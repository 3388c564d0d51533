import html
import logging
from datetime import datetime
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError
from sqlalchemy.ext.asyncio import async_sessionmaker

from vpn_shop.config import settings
from vpn_shop.database.crud.topup import get_topup_by_id
from vpn_shop.database.crud.user import get_user_by_id
from vpn_shop.database.database import AsyncSessionLocal
from vpn_shop.services.event_bus import EventBus, TopUpCredited

logger = logging.getLogger(__name__)


class AdminNotificationService:
    """Сообщения в админский чат о зачисленных пополнениях."""

    def __init__(
        self,
        bot: Bot,
        event_bus: EventBus,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.bot = bot
        self.event_bus = event_bus
        self._session_factory = session_factory or AsyncSessionLocal
        self.chat_id = settings.get_admin_notifications_chat_id()
        self.topic_id = settings.ADMIN_NOTIFICATIONS_TOPIC_ID
        self.enabled = settings.is_admin_notifications_enabled()

    def register(self) -> None:
        if not self.enabled:
            logger.info("ℹ️ Уведомления в админский чат отключены")
            return
        self.event_bus.subscribe(TopUpCredited, self.on_topup_credited)

    async def _send_message(self, text: str) -> bool:
        message_kwargs = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if self.topic_id:
            message_kwargs["message_thread_id"] = self.topic_id

        try:
            await self.bot.send_message(**message_kwargs)
            return True
        except TelegramForbiddenError:
            logger.error("Бот не имеет прав для отправки в чат %s", self.chat_id)
        except TelegramBadRequest as error:
            logger.error("Ошибка отправки уведомления в админский чат: %s", error)
        return False

    async def on_topup_credited(self, event: TopUpCredited) -> None:
        async with self._session_factory() as db:
            topup = await get_topup_by_id(db, event.topup_id)
            user = await get_user_by_id(db, event.user_id)
            await db.commit()

        if not topup:
            logger.warning("⚠️ Пополнение #%s не найдено для уведомления админов", event.topup_id)
            return

        username = html.escape(user.account_name) if user and user.account_name else "Без username"
        telegram_id = user.telegram_id if user else "N/A"
        balance = user.balance_kopeks if user else 0

        text = (
            "💰 <b>Успешное пополнение!</b>\n\n"
            f"👤 Пользователь: {username}\n"
            f"🆔 Telegram ID: <code>{telegram_id}</code>\n"
            f"💵 Сумма: <b>{settings.format_price(event.amount_kopeks)}</b>\n"
            f"💳 Новый баланс: {settings.format_price(balance)}\n"
            f"🕐 Время: {datetime.utcnow().strftime('%d.%m.%Y %H:%M')} UTC\n"
            f"📋 Order ID: <code>{html.escape(topup.order_id)}</code>"
        )

        if await self._send_message(text):
            logger.info("📢 Админы уведомлены о пополнении #%s", event.topup_id)
