import logging

from aiogram import Dispatcher, F, types

from vpn_shop.config import settings
from vpn_shop.database.models import TopUpStatus, User
from vpn_shop.keyboards import get_back_keyboard, get_invoice_keyboard, get_topup_amounts_keyboard
from vpn_shop.services.container import ServiceContainer
from vpn_shop.utils.decorators import error_handler

logger = logging.getLogger(__name__)

TOPUP_AMOUNT_PATTERN = r"^topup_(\d+)$"
CHECK_TOPUP_PATTERN = r"^check_topup_(\d+)$"

_STATUS_TEXTS = {
    TopUpStatus.PENDING.value: "⏳ Оплата ещё не поступила. Если вы уже оплатили, проверьте чуть позже.",
    TopUpStatus.FAILED.value: "❌ Оплата не прошла.",
    TopUpStatus.TIMEOUT.value: "⌛ Время на оплату истекло.",
}


@error_handler
async def show_topup_amounts(callback: types.CallbackQuery):
    await callback.message.edit_text(
        "💳 Выберите сумму пополнения:",
        reply_markup=get_topup_amounts_keyboard(),
    )
    await callback.answer()


@error_handler
async def create_topup_invoice(callback: types.CallbackQuery, db_user: User, services: ServiceContainer):
    amount_kopeks = int(callback.data.removeprefix("topup_"))
    if not services.payments.validate_amount(amount_kopeks):
        await callback.answer(
            "❌ Сумма должна быть от "
            f"{settings.format_price(settings.TOPUP_MIN_AMOUNT_KOPEKS)} до "
            f"{settings.format_price(settings.TOPUP_MAX_AMOUNT_KOPEKS)}",
            show_alert=True,
        )
        return

    await callback.answer("⏳ Создаём счёт...")
    invoice = await services.payments.create_invoice(db_user.id, amount_kopeks)
    if invoice is None:
        await callback.message.edit_text(
            "❌ Не удалось создать счёт. Попробуйте позже.",
            reply_markup=get_back_keyboard(),
        )
        return

    text = f"🧾 Счёт #{invoice.topup_id} на {settings.format_price(invoice.amount_kopeks)}\n\n"
    if invoice.is_fallback:
        text += (
            "Онлайн-оплата сейчас недоступна. Перейдите по ссылке и следуйте инструкции "
            f"или напишите в {settings.SUPPORT_USERNAME}."
        )
    else:
        text += "Нажмите «Оплатить», а после оплаты «Проверить оплату»."

    await callback.message.edit_text(
        text,
        reply_markup=get_invoice_keyboard(invoice.topup_id, invoice.payment_url),
    )


@error_handler
async def check_topup_status(callback: types.CallbackQuery, db_user: User, services: ServiceContainer):
    topup_id = int(callback.data.removeprefix("check_topup_"))
    state = await services.payments.check_topup(topup_id, db_user.id)

    if state is None:
        await callback.answer("❌ Счёт не найден", show_alert=True)
        return

    if state.credited:
        await callback.answer(
            f"✅ Оплата {settings.format_price(state.amount_kopeks)} зачислена на баланс",
            show_alert=True,
        )
        return

    await callback.answer(
        _STATUS_TEXTS.get(state.status, "⏳ Статус оплаты уточняется"),
        show_alert=True,
    )


def register_handlers(dp: Dispatcher):

    dp.callback_query.register(
        show_topup_amounts,
        F.data == "topup"
    )

    dp.callback_query.register(
        create_topup_invoice,
        F.data.regexp(TOPUP_AMOUNT_PATTERN)
    )

    dp.callback_query.register(
        check_topup_status,
        F.data.regexp(CHECK_TOPUP_PATTERN)
    )
