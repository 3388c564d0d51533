import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from vpn_shop.config import Plan, settings
from vpn_shop.database.crud.subscription import (
    create_subscription,
    extend_subscription_period,
    get_user_subscription,
    set_subscription_urls,
)
from vpn_shop.database.crud.user import (
    debit_balance_if_sufficient,
    get_user_balance,
    get_user_by_id,
)
from vpn_shop.database.database import AsyncSessionLocal
from vpn_shop.services.provisioning_service import (
    AccountSpec,
    ExtensionResult,
    ProvisioningResult,
    ProvisioningService,
    build_account_name,
)
from vpn_shop.utils.dates import add_months, period_days

logger = logging.getLogger(__name__)

_EXTEND_ATTEMPTS = 3


class UnknownPlanError(ValueError):
    pass


class PurchaseStatus(Enum):
    SUCCESS = "success"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NOT_FOUND = "not_found"
    NOT_EXTENDABLE = "not_extendable"


@dataclass(slots=True)
class PurchaseResult:
    status: PurchaseStatus
    plan_key: Optional[str] = None
    subscription_id: Optional[int] = None
    end_date: Optional[datetime] = None
    price_kopeks: int = 0
    balance_kopeks: Optional[int] = None
    missing_kopeks: int = 0
    subscription_url: Optional[str] = None
    subscription_url_2: Optional[str] = None
    provisioning_degraded: bool = False
    extension: Optional[ExtensionResult] = None

    @property
    def success(self) -> bool:
        return self.status == PurchaseStatus.SUCCESS


class SubscriptionPurchaseService:
    """Обмен баланса на время подписки с последующей выдачей доступа на панелях.

    Списание и запись подписки выполняются одной транзакцией; обращения к
    панелям идут уже после коммита и на деньги не влияют.
    """

    def __init__(
        self,
        provisioning: Optional[ProvisioningService] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.provisioning = provisioning or ProvisioningService()
        self._session_factory = session_factory or AsyncSessionLocal

    @staticmethod
    def _resolve_plan(plan_key: str) -> Plan:
        plan = settings.get_plan(plan_key)
        if plan is None or plan.price_kopeks <= 0:
            raise UnknownPlanError(f"Неизвестный тариф: {plan_key}")
        return plan

    async def purchase(self, user_id: int, plan_key: str) -> PurchaseResult:
        plan = self._resolve_plan(plan_key)
        now = datetime.utcnow()
        end_date = add_months(now, plan.months)

        async with self._session_factory() as db:
            user = await get_user_by_id(db, user_id)
            if not user:
                await db.commit()
                return PurchaseResult(PurchaseStatus.NOT_FOUND, plan_key=plan.key)
            telegram_id = user.telegram_id

            try:
                if not await debit_balance_if_sufficient(db, user_id, plan.price_kopeks):
                    balance = await get_user_balance(db, user_id) or 0
                    await db.commit()
                    missing = max(plan.price_kopeks - balance, 0)
                    logger.info(
                        "💸 Недостаточно средств у пользователя %s для %s: не хватает %s коп.",
                        user_id,
                        plan.key,
                        missing,
                    )
                    return PurchaseResult(
                        PurchaseStatus.INSUFFICIENT_FUNDS,
                        plan_key=plan.key,
                        price_kopeks=plan.price_kopeks,
                        balance_kopeks=balance,
                        missing_kopeks=missing,
                    )

                subscription = await create_subscription(db, user_id, plan.key, now, end_date)
                subscription_id = subscription.id
                await db.commit()
            except Exception:
                await db.rollback()
                logger.error("❌ Ошибка покупки %s пользователем %s", plan.key, user_id, exc_info=True)
                raise

        logger.info(
            "🛒 Пользователь %s купил %s: подписка #%s до %s",
            user_id,
            plan.key,
            subscription_id,
            end_date,
        )

        provisioning = await self.provision_subscription(
            subscription_id,
            telegram_id,
            plan.key,
            end_date,
        )

        return PurchaseResult(
            PurchaseStatus.SUCCESS,
            plan_key=plan.key,
            subscription_id=subscription_id,
            end_date=end_date,
            price_kopeks=plan.price_kopeks,
            subscription_url=provisioning.subscription_url,
            subscription_url_2=provisioning.subscription_url_2,
            provisioning_degraded=not provisioning.is_complete,
        )

    async def provision_subscription(
        self,
        subscription_id: int,
        telegram_id: int,
        subscription_type: str,
        end_date: datetime,
    ) -> ProvisioningResult:
        """Создаёт аккаунты на панелях и сохраняет полученные ссылки.

        Любая ошибка панелей только логируется: подписка уже оплачена.
        """

        spec = AccountSpec(
            account_name=build_account_name(telegram_id, subscription_type, subscription_id),
            expire_at=end_date,
            note=f"telegram_id={telegram_id}",
        )

        try:
            result = await self.provisioning.create_on_both_panels(spec)
        except Exception as error:
            logger.error("❌ Провижининг подписки #%s не выполнен: %s", subscription_id, error, exc_info=True)
            result = ProvisioningResult()

        if not result.has_any_url:
            logger.warning("⚠️ Подписка #%s осталась без ссылок доступа", subscription_id)
            return result

        async with self._session_factory() as db:
            await set_subscription_urls(
                db,
                subscription_id,
                result.subscription_url,
                result.subscription_url_2,
            )
        return result

    async def extend(self, subscription_id: int, user_id: int, plan_key: str) -> PurchaseResult:
        plan = self._resolve_plan(plan_key)

        for _ in range(_EXTEND_ATTEMPTS):
            now = datetime.utcnow()

            async with self._session_factory() as db:
                subscription = await get_user_subscription(db, subscription_id, user_id)
                if not subscription:
                    await db.commit()
                    return PurchaseResult(PurchaseStatus.NOT_FOUND, plan_key=plan.key)

                if subscription.is_free or subscription.end_date is None:
                    await db.commit()
                    return PurchaseResult(
                        PurchaseStatus.NOT_EXTENDABLE,
                        plan_key=plan.key,
                        subscription_id=subscription_id,
                    )

                user = await get_user_by_id(db, user_id)
                telegram_id = user.telegram_id
                subscription_type = subscription.type
                current_end = subscription.end_date
                period_start = max(current_end, now)
                new_end = add_months(period_start, plan.months)

                try:
                    if not await debit_balance_if_sufficient(db, user_id, plan.price_kopeks):
                        balance = await get_user_balance(db, user_id) or 0
                        await db.commit()
                        return PurchaseResult(
                            PurchaseStatus.INSUFFICIENT_FUNDS,
                            plan_key=plan.key,
                            subscription_id=subscription_id,
                            price_kopeks=plan.price_kopeks,
                            balance_kopeks=balance,
                            missing_kopeks=max(plan.price_kopeks - balance, 0),
                        )

                    if not await extend_subscription_period(db, subscription_id, current_end, new_end):
                        # параллельное продление успело раньше, списание откатываем
                        await db.rollback()
                        logger.info("🔁 Подписка #%s изменилась во время продления, повторяем", subscription_id)
                        continue

                    await db.commit()
                except Exception:
                    await db.rollback()
                    logger.error("❌ Ошибка продления подписки #%s", subscription_id, exc_info=True)
                    raise

            break
        else:
            raise RuntimeError(f"Не удалось продлить подписку #{subscription_id}: конкурентные изменения")

        logger.info(
            "⏩ Подписка #%s продлена на %s до %s",
            subscription_id,
            plan.key,
            new_end,
        )

        account_name = build_account_name(telegram_id, subscription_type, subscription_id)
        extension = await self.provisioning.extend_on_both_panels(
            account_name,
            period_days(period_start, new_end),
            target_end=new_end,
        )
        if extension.any_failed:
            logger.warning(
                "⚠️ Продление %s на панелях частично не выполнено: %s",
                account_name,
                extension,
            )

        return PurchaseResult(
            PurchaseStatus.SUCCESS,
            plan_key=plan.key,
            subscription_id=subscription_id,
            end_date=new_end,
            price_kopeks=plan.price_kopeks,
            provisioning_degraded=extension.any_failed,
            extension=extension,
        )

    async def reprovision(self, subscription_id: int, user_id: int) -> PurchaseResult:
        """Повторная выдача ссылок для подписки, у которой их не хватает."""

        async with self._session_factory() as db:
            subscription = await get_user_subscription(db, subscription_id, user_id)
            if not subscription:
                await db.commit()
                return PurchaseResult(PurchaseStatus.NOT_FOUND)
            if subscription.is_free or subscription.end_date is None:
                await db.commit()
                return PurchaseResult(PurchaseStatus.NOT_EXTENDABLE, subscription_id=subscription_id)

            user = await get_user_by_id(db, user_id)
            telegram_id = user.telegram_id
            subscription_type = subscription.type
            end_date = subscription.end_date
            url_1 = subscription.subscription_url
            url_2 = subscription.subscription_url_2
            await db.commit()

        if url_1 and url_2:
            return PurchaseResult(
                PurchaseStatus.SUCCESS,
                plan_key=subscription_type,
                subscription_id=subscription_id,
                end_date=end_date,
                subscription_url=url_1,
                subscription_url_2=url_2,
            )

        result = await self.provision_subscription(subscription_id, telegram_id, subscription_type, end_date)
        final_url_1 = url_1 or result.subscription_url
        final_url_2 = url_2 or result.subscription_url_2
        return PurchaseResult(
            PurchaseStatus.SUCCESS,
            plan_key=subscription_type,
            subscription_id=subscription_id,
            end_date=end_date,
            subscription_url=final_url_1,
            subscription_url_2=final_url_2,
            provisioning_degraded=not (final_url_1 and final_url_2),
        )
