from typing import Iterable, List, Optional

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from vpn_shop.config import settings
from vpn_shop.database.models import Subscription, SubscriptionType

BACK_BUTTON = InlineKeyboardButton(text="⬅️ Назад", callback_data="back_to_menu")

_TYPE_LABELS = {
    SubscriptionType.FREE.value: "🆓 Бесплатная",
    SubscriptionType.PROMO.value: "🎁 Промо",
}


def subscription_label(subscription: Subscription) -> str:
    label = _TYPE_LABELS.get(subscription.type)
    if label is None:
        plan = settings.get_plan(subscription.type)
        label = plan.label if plan else subscription.type
    return f"#{subscription.id} {label}"


def get_main_menu_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="🛒 Купить подписку", callback_data="plans")],
        [InlineKeyboardButton(text="📋 Мои подписки", callback_data="my_subs")],
        [
            InlineKeyboardButton(text="💰 Баланс", callback_data="balance"),
            InlineKeyboardButton(text="💳 Пополнить", callback_data="topup"),
        ],
        [
            InlineKeyboardButton(text="🎁 Промокод", callback_data="promo"),
            InlineKeyboardButton(text="🤝 Рефералы", callback_data="referral"),
        ],
    ])


def get_back_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[[BACK_BUTTON]])


def get_plans_keyboard(callback_prefix: str = "buy_") -> InlineKeyboardMarkup:
    keyboard = [
        [InlineKeyboardButton(
            text=f"{plan.label} · {settings.format_price(plan.price_kopeks)}",
            callback_data=f"{callback_prefix}{plan.key}",
        )]
        for plan in settings.get_plans()
    ]
    keyboard.append([BACK_BUTTON])
    return InlineKeyboardMarkup(inline_keyboard=keyboard)


def get_extend_plans_keyboard(subscription_id: int) -> InlineKeyboardMarkup:
    keyboard = get_plans_keyboard(callback_prefix=f"extend_{subscription_id}_").inline_keyboard
    keyboard[-1] = [InlineKeyboardButton(text="⬅️ Назад", callback_data=f"sub_{subscription_id}")]
    return InlineKeyboardMarkup(inline_keyboard=keyboard)


def get_subscriptions_keyboard(subscriptions: Iterable[Subscription]) -> InlineKeyboardMarkup:
    keyboard: List[List[InlineKeyboardButton]] = [
        [InlineKeyboardButton(text=subscription_label(sub), callback_data=f"sub_{sub.id}")]
        for sub in subscriptions
    ]
    keyboard.append([BACK_BUTTON])
    return InlineKeyboardMarkup(inline_keyboard=keyboard)


def get_subscription_keyboard(subscription: Subscription) -> InlineKeyboardMarkup:
    keyboard: List[List[InlineKeyboardButton]] = []
    if not subscription.is_free and subscription.end_date is not None:
        keyboard.append([InlineKeyboardButton(
            text="🔄 Продлить",
            callback_data=f"extend_choose_{subscription.id}",
        )])
        if not (subscription.subscription_url and subscription.subscription_url_2):
            keyboard.append([InlineKeyboardButton(
                text="🔁 Получить ссылки заново",
                callback_data=f"reprovision_{subscription.id}",
            )])
    keyboard.append([InlineKeyboardButton(text="⬅️ К подпискам", callback_data="my_subs")])
    return InlineKeyboardMarkup(inline_keyboard=keyboard)


def get_topup_amounts_keyboard() -> InlineKeyboardMarkup:
    amounts = settings.get_topup_amounts()
    keyboard: List[List[InlineKeyboardButton]] = []
    row: List[InlineKeyboardButton] = []
    for amount in amounts:
        row.append(InlineKeyboardButton(
            text=settings.format_price(amount),
            callback_data=f"topup_{amount}",
        ))
        if len(row) == 2:
            keyboard.append(row)
            row = []
    if row:
        keyboard.append(row)
    keyboard.append([BACK_BUTTON])
    return InlineKeyboardMarkup(inline_keyboard=keyboard)


def get_insufficient_funds_keyboard(missing_kopeks: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(
            text=f"💳 Пополнить на {settings.format_price(missing_kopeks)}",
            callback_data=f"topup_{missing_kopeks}",
        )],
        [InlineKeyboardButton(text="💳 Другая сумма", callback_data="topup")],
        [BACK_BUTTON],
    ])


def get_invoice_keyboard(topup_id: int, payment_url: Optional[str]) -> InlineKeyboardMarkup:
    keyboard: List[List[InlineKeyboardButton]] = []
    if payment_url:
        keyboard.append([InlineKeyboardButton(text="💳 Оплатить", url=payment_url)])
    keyboard.append([InlineKeyboardButton(
        text="🔍 Проверить оплату",
        callback_data=f"check_topup_{topup_id}",
    )])
    keyboard.append([BACK_BUTTON])
    return InlineKeyboardMarkup(inline_keyboard=keyboard)
