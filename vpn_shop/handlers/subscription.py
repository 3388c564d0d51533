import logging
from typing import Optional

from aiogram import Dispatcher, F, types

from vpn_shop.config import settings
from vpn_shop.database.models import Subscription, User
from vpn_shop.keyboards import (
    get_back_keyboard,
    get_extend_plans_keyboard,
    get_insufficient_funds_keyboard,
    get_plans_keyboard,
    get_subscription_keyboard,
    get_subscriptions_keyboard,
    subscription_label,
)
from vpn_shop.services.container import ServiceContainer
from vpn_shop.services.subscription_purchase_service import PurchaseResult, PurchaseStatus
from vpn_shop.utils.dates import days_left
from vpn_shop.utils.decorators import error_handler

logger = logging.getLogger(__name__)

BUY_PATTERN = r"^buy_(M\d+)$"
SUB_PATTERN = r"^sub_(\d+)$"
EXTEND_CHOOSE_PATTERN = r"^extend_choose_(\d+)$"
EXTEND_PATTERN = r"^extend_(\d+)_(M\d+)$"
REPROVISION_PATTERN = r"^reprovision_(\d+)$"


def _format_links(url_1: Optional[str], url_2: Optional[str]) -> str:
    lines = []
    if url_1:
        lines.append(f"🔗 Сервер 1: <code>{url_1}</code>")
    if url_2:
        lines.append(f"🔗 Сервер 2: <code>{url_2}</code>")
    if not lines:
        return "⚠️ Ссылки пока не выданы. Попробуйте получить их заново позже."
    return "\n".join(lines)


def format_subscription_details(subscription: Subscription) -> str:
    lines = [f"📦 Подписка {subscription_label(subscription)}"]
    if subscription.end_date is None:
        lines.append("Срок: бессрочно")
    else:
        status = "🟢 активна" if subscription.is_active else "🔴 истекла"
        lines.append(f"Статус: {status}")
        lines.append(f"Действует до: {subscription.end_date:%d.%m.%Y %H:%M} UTC")
        if subscription.is_active:
            lines.append(f"Осталось дней: {days_left(subscription.end_date)}")
    lines.append("")
    lines.append(_format_links(subscription.subscription_url, subscription.subscription_url_2))
    return "\n".join(lines)


def _insufficient_funds_text(result: PurchaseResult) -> str:
    return (
        "💸 Недостаточно средств.\n"
        f"Стоимость: {settings.format_price(result.price_kopeks)}\n"
        f"Ваш баланс: {settings.format_price(result.balance_kopeks or 0)}\n"
        f"Не хватает: {settings.format_price(result.missing_kopeks)}"
    )


@error_handler
async def show_plans(callback: types.CallbackQuery):
    await callback.message.edit_text(
        "🛒 Выберите срок подписки:",
        reply_markup=get_plans_keyboard(),
    )
    await callback.answer()


@error_handler
async def buy_plan(callback: types.CallbackQuery, db_user: User, services: ServiceContainer):
    plan_key = callback.data.removeprefix("buy_")
    if settings.get_plan(plan_key) is None:
        await callback.answer("❌ Неизвестный тариф", show_alert=True)
        return

    await callback.answer("⏳ Оформляем подписку...")
    result = await services.purchases.purchase(db_user.id, plan_key)

    if result.status == PurchaseStatus.INSUFFICIENT_FUNDS:
        await callback.message.edit_text(
            _insufficient_funds_text(result),
            reply_markup=get_insufficient_funds_keyboard(result.missing_kopeks),
        )
        return

    if not result.success:
        await callback.message.edit_text("❌ Не удалось оформить подписку", reply_markup=get_back_keyboard())
        return

    text = (
        f"✅ Подписка #{result.subscription_id} оформлена!\n"
        f"Действует до: {result.end_date:%d.%m.%Y %H:%M} UTC\n\n"
        f"{_format_links(result.subscription_url, result.subscription_url_2)}"
    )
    if result.provisioning_degraded:
        text += "\n\n⚠️ Не все серверы выдали доступ. Ссылки можно получить заново в разделе «Мои подписки»."
    await callback.message.edit_text(text, reply_markup=get_back_keyboard())


@error_handler
async def show_my_subscriptions(callback: types.CallbackQuery, db_user: User, services: ServiceContainer):
    subscriptions = await services.users.list_subscriptions(db_user.id)
    if not subscriptions:
        text = "📋 У вас пока нет подписок."
    else:
        text = "📋 Ваши подписки:"
    await callback.message.edit_text(text, reply_markup=get_subscriptions_keyboard(subscriptions))
    await callback.answer()


@error_handler
async def show_subscription(callback: types.CallbackQuery, db_user: User, services: ServiceContainer):
    subscription_id = int(callback.data.removeprefix("sub_"))
    subscription = await services.users.get_subscription(db_user.id, subscription_id)
    if not subscription:
        await callback.answer("❌ Подписка не найдена", show_alert=True)
        return

    await callback.message.edit_text(
        format_subscription_details(subscription),
        reply_markup=get_subscription_keyboard(subscription),
    )
    await callback.answer()


@error_handler
async def choose_extend_plan(callback: types.CallbackQuery, db_user: User, services: ServiceContainer):
    subscription_id = int(callback.data.removeprefix("extend_choose_"))
    subscription = await services.users.get_subscription(db_user.id, subscription_id)
    if not subscription:
        await callback.answer("❌ Подписка не найдена", show_alert=True)
        return
    if subscription.is_free or subscription.end_date is None:
        await callback.answer("ℹ️ Эту подписку нельзя продлить", show_alert=True)
        return

    await callback.message.edit_text(
        f"🔄 Продление подписки #{subscription_id}. Выберите срок:",
        reply_markup=get_extend_plans_keyboard(subscription_id),
    )
    await callback.answer()


@error_handler
async def extend_subscription(callback: types.CallbackQuery, db_user: User, services: ServiceContainer):
    raw_id, plan_key = callback.data.removeprefix("extend_").split("_", 1)
    subscription_id = int(raw_id)
    if settings.get_plan(plan_key) is None:
        await callback.answer("❌ Неизвестный тариф", show_alert=True)
        return

    await callback.answer("⏳ Продлеваем подписку...")
    result = await services.purchases.extend(subscription_id, db_user.id, plan_key)

    if result.status == PurchaseStatus.NOT_FOUND:
        await callback.message.edit_text("❌ Подписка не найдена", reply_markup=get_back_keyboard())
        return
    if result.status == PurchaseStatus.NOT_EXTENDABLE:
        await callback.message.edit_text("ℹ️ Эту подписку нельзя продлить", reply_markup=get_back_keyboard())
        return
    if result.status == PurchaseStatus.INSUFFICIENT_FUNDS:
        await callback.message.edit_text(
            _insufficient_funds_text(result),
            reply_markup=get_insufficient_funds_keyboard(result.missing_kopeks),
        )
        return

    text = (
        f"✅ Подписка #{subscription_id} продлена!\n"
        f"Действует до: {result.end_date:%d.%m.%Y %H:%M} UTC"
    )
    if result.provisioning_degraded:
        text += "\n\n⚠️ Не все серверы подтвердили продление, мы уже разбираемся."
    await callback.message.edit_text(text, reply_markup=get_back_keyboard())


@error_handler
async def reprovision_subscription(callback: types.CallbackQuery, db_user: User, services: ServiceContainer):
    subscription_id = int(callback.data.removeprefix("reprovision_"))
    await callback.answer("⏳ Запрашиваем ссылки...")
    result = await services.purchases.reprovision(subscription_id, db_user.id)

    if result.status == PurchaseStatus.NOT_FOUND:
        await callback.message.edit_text("❌ Подписка не найдена", reply_markup=get_back_keyboard())
        return
    if not result.success:
        await callback.message.edit_text("ℹ️ Для этой подписки ссылки не выдаются", reply_markup=get_back_keyboard())
        return

    await callback.message.edit_text(
        f"📦 Подписка #{subscription_id}\n\n"
        f"{_format_links(result.subscription_url, result.subscription_url_2)}",
        reply_markup=get_back_keyboard(),
    )


def register_handlers(dp: Dispatcher):

    dp.callback_query.register(
        show_plans,
        F.data == "plans"
    )

    dp.callback_query.register(
        buy_plan,
        F.data.regexp(BUY_PATTERN)
    )

    dp.callback_query.register(
        show_my_subscriptions,
        F.data == "my_subs"
    )

    dp.callback_query.register(
        show_subscription,
        F.data.regexp(SUB_PATTERN)
    )

    dp.callback_query.register(
        choose_extend_plan,
        F.data.regexp(EXTEND_CHOOSE_PATTERN)
    )

    dp.callback_query.register(
        extend_subscription,
        F.data.regexp(EXTEND_PATTERN)
    )

    dp.callback_query.register(
        reprovision_subscription,
        F.data.regexp(REPROVISION_PATTERN)
    )
