import logging
from typing import Optional

from aiogram import Dispatcher, types
from aiogram.filters import Command, CommandObject

from vpn_shop.config import settings
from vpn_shop.database.models import AdminPromoType
from vpn_shop.services.container import ServiceContainer
from vpn_shop.services.credit_service import CreditStatus, TransitionStatus
from vpn_shop.utils.decorators import admin_required, error_handler

logger = logging.getLogger(__name__)


def _parse_topup_id(command: CommandObject) -> Optional[int]:
    raw = (command.args or "").strip()
    if not raw.isdigit():
        return None
    return int(raw)


@admin_required
@error_handler
async def cmd_approve_topup(message: types.Message, command: CommandObject, services: ServiceContainer):
    topup_id = _parse_topup_id(command)
    if topup_id is None:
        await message.answer("Использование: /approve_topup <id>")
        return

    result = await services.credit.resolve_success(topup_id)
    if result.status == CreditStatus.NOT_FOUND:
        await message.answer(f"❌ Пополнение #{topup_id} не найдено")
    elif result.status == CreditStatus.ALREADY_CREDITED:
        await message.answer(f"ℹ️ Пополнение #{topup_id} уже зачислено")
    else:
        logger.info("👮 Админ %s подтвердил пополнение #%s", message.from_user.id, topup_id)
        await message.answer(
            f"✅ Пополнение #{topup_id} зачислено: {settings.format_price(result.amount_kopeks)}"
        )


@admin_required
@error_handler
async def cmd_fail_topup(message: types.Message, command: CommandObject, services: ServiceContainer):
    topup_id = _parse_topup_id(command)
    if topup_id is None:
        await message.answer("Использование: /fail_topup <id>")
        return

    result = await services.credit.resolve_failure(topup_id)
    if result.status == TransitionStatus.NOT_FOUND:
        await message.answer(f"❌ Пополнение #{topup_id} не найдено")
    elif result.status == TransitionStatus.ALREADY_PROCESSED:
        await message.answer(f"ℹ️ Пополнение #{topup_id} уже обработано")
    else:
        logger.info("👮 Админ %s отклонил пополнение #%s", message.from_user.id, topup_id)
        await message.answer(f"🚫 Пополнение #{topup_id} помечено как неуспешное")


@admin_required
@error_handler
async def cmd_delete_topup(message: types.Message, command: CommandObject, services: ServiceContainer):
    topup_id = _parse_topup_id(command)
    if topup_id is None:
        await message.answer("Использование: /delete_topup <id>")
        return

    removed_bonuses = await services.credit.delete_topup(topup_id)
    if removed_bonuses is None:
        await message.answer(f"❌ Пополнение #{topup_id} не найдено")
        return

    logger.info("👮 Админ %s удалил пополнение #%s", message.from_user.id, topup_id)
    await message.answer(
        f"🗑 Пополнение #{topup_id} удалено, связанных бонусов: {removed_bonuses}.\n"
        "Баланс пользователя не изменялся."
    )


@admin_required
@error_handler
async def cmd_create_promo(message: types.Message, command: CommandObject, services: ServiceContainer):
    """/create_promo balance <рубли> [reusable] или /create_promo days <дни> [reusable]"""

    args = (command.args or "").split()
    usage = "Использование: /create_promo balance|days <значение> [reusable]"
    if len(args) < 2 or not args[1].isdigit():
        await message.answer(usage)
        return

    kind, value = args[0].lower(), int(args[1])
    is_reusable = len(args) > 2 and args[2].lower() == "reusable"

    if kind == "balance":
        promo = await services.promocodes.create_admin_promo(
            AdminPromoType.BALANCE,
            amount_kopeks=value * 100,
            is_reusable=is_reusable,
        )
    elif kind == "days":
        promo = await services.promocodes.create_admin_promo(
            AdminPromoType.DAYS,
            days=value,
            is_reusable=is_reusable,
        )
    else:
        await message.answer(usage)
        return

    logger.info("👮 Админ %s создал промокод %s", message.from_user.id, promo.code)
    await message.answer(f"🎁 Промокод <code>{promo.code}</code> создан: {promo.describe()}")


def register_handlers(dp: Dispatcher):

    dp.message.register(cmd_approve_topup, Command("approve_topup"))
    dp.message.register(cmd_fail_topup, Command("fail_topup"))
    dp.message.register(cmd_delete_topup, Command("delete_topup"))
    dp.message.register(cmd_create_promo, Command("create_promo"))
