import logging

from aiogram import Dispatcher, F, types
from aiogram.filters import Command, CommandStart
from aiogram.fsm.context import FSMContext

from vpn_shop.config import settings
from vpn_shop.database.models import User
from vpn_shop.keyboards import get_back_keyboard, get_main_menu_keyboard
from vpn_shop.services.container import ServiceContainer
from vpn_shop.utils.decorators import error_handler

logger = logging.getLogger(__name__)

MAIN_MENU_TEXT = (
    "👋 Добро пожаловать в VPN-магазин!\n\n"
    "Здесь можно купить и продлить подписку, пополнить баланс "
    "и активировать промокод."
)


@error_handler
async def cmd_start(message: types.Message, state: FSMContext):
    await state.clear()
    await message.answer(MAIN_MENU_TEXT, reply_markup=get_main_menu_keyboard())


@error_handler
async def show_main_menu(callback: types.CallbackQuery, state: FSMContext):
    await state.clear()
    await callback.message.edit_text(MAIN_MENU_TEXT, reply_markup=get_main_menu_keyboard())
    await callback.answer()


@error_handler
async def show_balance(callback: types.CallbackQuery, db_user: User, services: ServiceContainer):
    profile = await services.users.get_profile(db_user.id)
    balance = profile.balance_kopeks if profile else 0
    await callback.message.edit_text(
        f"💰 Ваш баланс: {settings.format_price(balance)}",
        reply_markup=get_back_keyboard(),
    )
    await callback.answer()


@error_handler
async def cmd_help(message: types.Message):
    support = settings.SUPPORT_USERNAME or "поддержку"
    await message.answer(
        "ℹ️ Команды:\n"
        "/start - главное меню\n"
        "/help - эта справка\n\n"
        f"По вопросам оплаты пишите в {support}."
    )


def register_handlers(dp: Dispatcher):

    dp.message.register(cmd_start, CommandStart())
    dp.message.register(cmd_help, Command("help"))

    dp.callback_query.register(
        show_main_menu,
        F.data == "back_to_menu"
    )

    dp.callback_query.register(
        show_balance,
        F.data == "balance"
    )
