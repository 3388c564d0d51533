import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from vpn_shop.config import settings
from vpn_shop.database.crud.subscription import (
    claim_expired_reminder,
    claim_notification_flag,
    get_reminder_candidates,
)
from vpn_shop.database.crud.topup import get_stale_pending_topups
from vpn_shop.database.database import AsyncSessionLocal
from vpn_shop.services.credit_service import CreditService
from vpn_shop.services.event_bus import EventBus, RenewalDue, SubscriptionExpired
from vpn_shop.utils.dates import days_left

logger = logging.getLogger(__name__)

_REMINDER_FLAGS = {
    3: "notified_3_days",
    1: "notified_1_day",
}


class MonitoringService:
    """Фоновые проверки: зависшие пополнения и окончание подписок."""

    def __init__(
        self,
        credit_service: CreditService,
        event_bus: EventBus,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.credit_service = credit_service
        self.event_bus = event_bus
        self._session_factory = session_factory or AsyncSessionLocal
        self.is_running = False
        self._topup_task: Optional[asyncio.Task] = None

    async def start_monitoring(self):
        if self.is_running:
            logger.warning("Мониторинг уже запущен")
            return

        self.is_running = True
        logger.info("🔄 Запуск службы мониторинга")

        if not self._topup_task or self._topup_task.done():
            self._topup_task = asyncio.create_task(self._topup_loop())

        while self.is_running:
            try:
                await self.run_expiry_sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Ошибка проверки окончания подписок: %s", e, exc_info=True)
            await asyncio.sleep(settings.EXPIRY_CHECK_INTERVAL_SECONDS)

    def stop_monitoring(self):
        self.is_running = False
        if self._topup_task and not self._topup_task.done():
            self._topup_task.cancel()
        logger.info("ℹ️ Мониторинг остановлен")

    async def _topup_loop(self):
        while self.is_running:
            try:
                await self.run_topup_sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Ошибка очистки зависших пополнений: %s", e, exc_info=True)
            await asyncio.sleep(settings.TOPUP_CLEANER_INTERVAL_SECONDS)

    async def run_topup_sweep(self, now: Optional[datetime] = None) -> int:
        async with self._session_factory() as db:
            stale = await get_stale_pending_topups(
                db,
                settings.TOPUP_PENDING_TIMEOUT_SECONDS,
                now=now,
            )
            stale_ids = [topup.id for topup in stale]
            await db.commit()

        timed_out = 0
        for topup_id in stale_ids:
            try:
                result = await self.credit_service.resolve_timeout(topup_id)
            except Exception as e:
                logger.error("Не удалось перевести пополнение #%s в TIMEOUT: %s", topup_id, e)
                continue
            if result.changed:
                timed_out += 1

        if timed_out:
            logger.info("⏰ Переведено в TIMEOUT пополнений: %s", timed_out)
        return timed_out

    async def run_expiry_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        stats = {"3_days": 0, "1_day": 0, "expired": 0}

        async with self._session_factory() as db:
            candidates = [
                (sub.id, sub.user_id, sub.type, sub.end_date)
                for sub in await get_reminder_candidates(db)
            ]
            await db.commit()

        for subscription_id, user_id, subscription_type, end_date in candidates:
            try:
                event = await self._claim_reminder(
                    subscription_id,
                    user_id,
                    subscription_type,
                    end_date,
                    now,
                )
            except Exception as e:
                logger.error("Ошибка напоминания для подписки #%s: %s", subscription_id, e)
                continue

            if event is None:
                continue

            if isinstance(event, SubscriptionExpired):
                stats["expired"] += 1
            elif event.days_left == 3:
                stats["3_days"] += 1
            else:
                stats["1_day"] += 1
            await self.event_bus.publish(event)

        if any(stats.values()):
            logger.info("📬 Напоминания о подписках: %s", stats)
        return stats

    async def _claim_reminder(
        self,
        subscription_id: int,
        user_id: int,
        subscription_type: str,
        end_date: datetime,
        now: datetime,
    ):
        if end_date <= now:
            async with self._session_factory() as db:
                claimed = await claim_expired_reminder(
                    db,
                    subscription_id,
                    end_date,
                    settings.EXPIRED_REMINDER_INTERVAL_DAYS,
                    now=now,
                )
                await db.commit()
            if not claimed:
                return None
            return SubscriptionExpired(
                subscription_id=subscription_id,
                user_id=user_id,
                subscription_type=subscription_type,
                end_date=end_date,
            )

        remaining = days_left(end_date, now)
        flag = _REMINDER_FLAGS.get(remaining)
        if flag is None:
            return None

        async with self._session_factory() as db:
            claimed = await claim_notification_flag(db, subscription_id, flag, end_date)
            await db.commit()
        if not claimed:
            return None

        return RenewalDue(
            subscription_id=subscription_id,
            user_id=user_id,
            subscription_type=subscription_type,
            days_left=remaining,
            end_date=end_date,
        )
