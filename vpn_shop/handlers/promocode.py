import logging

from aiogram import Dispatcher, F, types
from aiogram.fsm.context import FSMContext

from vpn_shop.config import settings
from vpn_shop.database.models import User
from vpn_shop.keyboards import get_back_keyboard
from vpn_shop.services.container import ServiceContainer
from vpn_shop.services.promocode_service import PromoActivationResult, PromoActivationStatus
from vpn_shop.states import PromoStates
from vpn_shop.utils.decorators import error_handler

logger = logging.getLogger(__name__)

_ERROR_TEXTS = {
    PromoActivationStatus.INVALID_CODE: "❌ Введите корректный промокод",
    PromoActivationStatus.NOT_FOUND: "❌ Промокод не найден",
    PromoActivationStatus.SELF_ACTIVATION: "❌ Нельзя активировать собственный промокод",
    PromoActivationStatus.ALREADY_ACTIVATED_REFERRAL: "ℹ️ Вы уже активировали реферальный промокод",
    PromoActivationStatus.ALREADY_ACTIVATED_THIS_PROMO: "ℹ️ Вы уже активировали этот промокод",
    PromoActivationStatus.PROMO_ALREADY_USED: "❌ Промокод уже использован",
}


def format_activation_result(result: PromoActivationResult) -> str:
    if result.status == PromoActivationStatus.BALANCE_ACTIVATED:
        return f"🎉 Промокод активирован! На баланс зачислено {settings.format_price(result.amount_kopeks)}."

    if result.status in (
        PromoActivationStatus.REFERRAL_ACTIVATED,
        PromoActivationStatus.DAYS_ACTIVATED,
    ):
        lines = [f"🎉 Промокод активирован! Подписка #{result.subscription_id} на {result.days} дн."]
        if result.subscription_url:
            lines.append(f"🔗 Сервер 1: <code>{result.subscription_url}</code>")
        if result.subscription_url_2:
            lines.append(f"🔗 Сервер 2: <code>{result.subscription_url_2}</code>")
        return "\n".join(lines)

    return _ERROR_TEXTS.get(result.status, "❌ Промокод не найден")


@error_handler
async def show_promocode_menu(callback: types.CallbackQuery, state: FSMContext):
    await callback.message.edit_text(
        "🎁 Отправьте промокод одним сообщением:",
        reply_markup=get_back_keyboard(),
    )
    await state.set_state(PromoStates.waiting_for_code)
    await callback.answer()


@error_handler
async def process_promocode(
    message: types.Message,
    db_user: User,
    state: FSMContext,
    services: ServiceContainer,
):
    code = (message.text or "").strip()
    if not code:
        await message.answer(_ERROR_TEXTS[PromoActivationStatus.INVALID_CODE], reply_markup=get_back_keyboard())
        return

    result = await services.promocodes.activate_promo_code(db_user.id, code)
    if result.success:
        logger.info("✅ Пользователь %s активировал промокод %s", db_user.telegram_id, result.code)

    await message.answer(format_activation_result(result), reply_markup=get_back_keyboard())
    await state.clear()


@error_handler
async def show_referral_info(callback: types.CallbackQuery, db_user: User, services: ServiceContainer):
    profile = await services.users.get_profile(db_user.id)
    if profile is None:
        await callback.answer("❌ Пользователь не найден", show_alert=True)
        return
    stats = await services.referrals.get_referral_stats(db_user.id)

    text = (
        "🤝 Реферальная программа\n\n"
        f"Ваш промокод: <code>{profile.promo_code}</code>\n"
        f"Друг получит {settings.REFERRAL_TRIAL_DAYS} дн. бесплатно, а вы "
        f"{settings.REFERRAL_BONUS_PERCENT}% от каждого его пополнения.\n\n"
        f"Активаций: {stats['activations']}\n"
        f"Бонусов: {stats['bonuses_count']} на {settings.format_price(stats['total_bonus_kopeks'])}"
    )
    if settings.BOT_USERNAME:
        text += f"\n\nБот: @{settings.BOT_USERNAME}"

    await callback.message.edit_text(text, reply_markup=get_back_keyboard())
    await callback.answer()


def register_handlers(dp: Dispatcher):

    dp.callback_query.register(
        show_promocode_menu,
        F.data == "promo"
    )

    dp.message.register(
        process_promocode,
        PromoStates.waiting_for_code
    )

    dp.callback_query.register(
        show_referral_info,
        F.data == "referral"
    )
