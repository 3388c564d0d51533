import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from vpn_shop.config import settings
from vpn_shop.database.crud.promocode import (
    claim_single_use_promo,
    create_admin_promo,
    delete_admin_promo,
    get_admin_promo_by_code,
    get_admin_promo_by_id,
    record_reusable_promo_activation,
)
from vpn_shop.database.crud.referral import (
    create_referral_activation,
    get_referral_activation_by_activator,
)
from vpn_shop.database.crud.subscription import create_subscription
from vpn_shop.database.crud.user import (
    credit_balance,
    generate_promo_code,
    get_user_by_id,
    get_user_by_promo_code,
)
from vpn_shop.database.database import AsyncSessionLocal
from vpn_shop.database.models import AdminPromo, AdminPromoType, SubscriptionType
from vpn_shop.services.subscription_purchase_service import SubscriptionPurchaseService

logger = logging.getLogger(__name__)

_PROMO_CODE_RE = re.compile(r"^[A-Z0-9_-]{3,32}$")
_ADMIN_CODE_ATTEMPTS = 10


class PromoActivationStatus(Enum):
    REFERRAL_ACTIVATED = "referral_activated"
    BALANCE_ACTIVATED = "balance_activated"
    DAYS_ACTIVATED = "days_activated"
    INVALID_CODE = "invalid_code"
    NOT_FOUND = "not_found"
    SELF_ACTIVATION = "self_activation"
    ALREADY_ACTIVATED_REFERRAL = "already_activated_referral"
    ALREADY_ACTIVATED_THIS_PROMO = "already_activated_this_promo"
    PROMO_ALREADY_USED = "promo_already_used"


@dataclass(slots=True)
class PromoActivationResult:
    status: PromoActivationStatus
    code: Optional[str] = None
    amount_kopeks: int = 0
    days: int = 0
    subscription_id: Optional[int] = None
    subscription_url: Optional[str] = None
    subscription_url_2: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (
            PromoActivationStatus.REFERRAL_ACTIVATED,
            PromoActivationStatus.BALANCE_ACTIVATED,
            PromoActivationStatus.DAYS_ACTIVATED,
        )


def normalize_promo_code(raw: Optional[str]) -> Optional[str]:
    code = (raw or "").strip().upper()
    if not _PROMO_CODE_RE.match(code):
        return None
    return code


class PromoCodeService:
    """Активация реферальных и админских промокодов."""

    def __init__(
        self,
        purchase_service: SubscriptionPurchaseService,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.purchase_service = purchase_service
        self._session_factory = session_factory or AsyncSessionLocal

    async def activate_promo_code(self, user_id: int, raw_code: str) -> PromoActivationResult:
        code = normalize_promo_code(raw_code)
        if not code:
            return PromoActivationResult(PromoActivationStatus.INVALID_CODE)

        async with self._session_factory() as db:
            user = await get_user_by_id(db, user_id)
            if not user:
                await db.commit()
                return PromoActivationResult(PromoActivationStatus.NOT_FOUND, code)
            telegram_id = user.telegram_id

            promo = await get_admin_promo_by_code(db, code)
            owner = None if promo else await get_user_by_promo_code(db, code)
            await db.commit()

        if promo:
            return await self._activate_admin_promo(promo, user_id, telegram_id)
        if not owner:
            logger.info("🔍 Промокод %s не найден (пользователь %s)", code, user_id)
            return PromoActivationResult(PromoActivationStatus.NOT_FOUND, code)
        if owner.id == user_id:
            return PromoActivationResult(PromoActivationStatus.SELF_ACTIVATION, code)

        return await self._activate_referral_code(code, owner.id, user_id, telegram_id)

    async def _activate_referral_code(
        self,
        code: str,
        owner_id: int,
        user_id: int,
        telegram_id: int,
    ) -> PromoActivationResult:
        now = datetime.utcnow()
        days = settings.REFERRAL_TRIAL_DAYS
        end_date = now + timedelta(days=days)

        async with self._session_factory() as db:
            if await get_referral_activation_by_activator(db, user_id):
                await db.commit()
                return PromoActivationResult(PromoActivationStatus.ALREADY_ACTIVATED_REFERRAL, code)

            try:
                await create_referral_activation(db, owner_id, user_id)
                subscription = await create_subscription(
                    db,
                    user_id,
                    SubscriptionType.PROMO.value,
                    now,
                    end_date,
                )
                subscription_id = subscription.id
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return PromoActivationResult(PromoActivationStatus.ALREADY_ACTIVATED_REFERRAL, code)

        logger.info("🤝 Пользователь %s активировал реферальный код %s", user_id, code)

        provisioning = await self.purchase_service.provision_subscription(
            subscription_id,
            telegram_id,
            SubscriptionType.PROMO.value,
            end_date,
        )
        return PromoActivationResult(
            PromoActivationStatus.REFERRAL_ACTIVATED,
            code,
            days=days,
            subscription_id=subscription_id,
            subscription_url=provisioning.subscription_url,
            subscription_url_2=provisioning.subscription_url_2,
        )

    async def _activate_admin_promo(
        self,
        promo: AdminPromo,
        user_id: int,
        telegram_id: int,
    ) -> PromoActivationResult:
        promo_id = promo.id
        code = promo.code
        promo_type = promo.type
        amount = promo.amount_kopeks or 0
        days = promo.days or 0
        now = datetime.utcnow()
        end_date = now + timedelta(days=days)
        subscription_id = None

        async with self._session_factory() as db:
            try:
                if promo.is_reusable:
                    await record_reusable_promo_activation(db, promo_id, user_id)
                elif not await claim_single_use_promo(db, promo_id, user_id):
                    current = await get_admin_promo_by_id(db, promo_id)
                    await db.commit()
                    if current and current.used_by_id == user_id:
                        return PromoActivationResult(PromoActivationStatus.ALREADY_ACTIVATED_THIS_PROMO, code)
                    return PromoActivationResult(PromoActivationStatus.PROMO_ALREADY_USED, code)

                if promo_type == AdminPromoType.BALANCE.value:
                    await credit_balance(db, user_id, amount)
                elif promo_type == AdminPromoType.DAYS.value:
                    subscription = await create_subscription(
                        db,
                        user_id,
                        SubscriptionType.PROMO.value,
                        now,
                        end_date,
                    )
                    subscription_id = subscription.id
                else:
                    raise ValueError(f"Неизвестный тип промокода: {promo_type}")

                await db.commit()
            except IntegrityError:
                await db.rollback()
                return PromoActivationResult(PromoActivationStatus.ALREADY_ACTIVATED_THIS_PROMO, code)
            except Exception:
                await db.rollback()
                logger.error("❌ Ошибка активации промокода %s пользователем %s", code, user_id, exc_info=True)
                raise

        logger.info("🎁 Пользователь %s активировал промокод %s (%s)", user_id, code, promo_type)

        if promo_type == AdminPromoType.BALANCE.value:
            return PromoActivationResult(
                PromoActivationStatus.BALANCE_ACTIVATED,
                code,
                amount_kopeks=amount,
            )

        provisioning = await self.purchase_service.provision_subscription(
            subscription_id,
            telegram_id,
            SubscriptionType.PROMO.value,
            end_date,
        )
        return PromoActivationResult(
            PromoActivationStatus.DAYS_ACTIVATED,
            code,
            days=days,
            subscription_id=subscription_id,
            subscription_url=provisioning.subscription_url,
            subscription_url_2=provisioning.subscription_url_2,
        )

    async def create_admin_promo(
        self,
        promo_type: AdminPromoType,
        amount_kopeks: int = 0,
        days: int = 0,
        is_reusable: bool = False,
        code: Optional[str] = None,
        custom_name: Optional[str] = None,
    ) -> AdminPromo:
        if promo_type == AdminPromoType.BALANCE and amount_kopeks <= 0:
            raise ValueError("Для промокода на баланс нужна положительная сумма")
        if promo_type == AdminPromoType.DAYS and days <= 0:
            raise ValueError("Для промокода на дни нужно положительное число дней")

        if code is not None:
            normalized = normalize_promo_code(code)
            if not normalized:
                raise ValueError(f"Некорректный промокод: {code}")
            candidates = [normalized]
        else:
            candidates = [generate_promo_code() for _ in range(_ADMIN_CODE_ATTEMPTS)]

        for candidate in candidates:
            async with self._session_factory() as db:
                if await get_user_by_promo_code(db, candidate):
                    await db.commit()
                    continue
                try:
                    return await create_admin_promo(
                        db,
                        candidate,
                        promo_type.value,
                        amount_kopeks=amount_kopeks,
                        days=days,
                        is_reusable=is_reusable,
                        custom_name=custom_name,
                    )
                except IntegrityError:
                    await db.rollback()
                    logger.debug("Промокод %s уже занят", candidate)

        raise ValueError("Не удалось подобрать свободный промокод")

    async def delete_admin_promo(self, promo_id: int) -> bool:
        async with self._session_factory() as db:
            return await delete_admin_promo(db, promo_id)
