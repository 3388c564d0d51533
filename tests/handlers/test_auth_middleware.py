from datetime import datetime

import pytest
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.types import Chat, Message, User

from vpn_shop.bot import setup_dispatcher
from vpn_shop.middlewares.auth import AuthMiddleware
from vpn_shop.services.container import build_services
from vpn_shop.services.user_service import UserService

pytestmark = pytest.mark.anyio


def _message(user_id: int, username=None, is_bot: bool = False) -> Message:
    return Message(
        message_id=1,
        date=datetime(2025, 1, 1),
        chat=Chat(id=user_id * 10, type="private"),
        from_user=User(id=user_id, is_bot=is_bot, first_name="Иван", username=username),
        text="/start",
    )


async def test_middleware_registers_user_and_injects_snapshot(session_factory) -> None:
    middleware = AuthMiddleware(UserService(session_factory=session_factory))
    seen = {}

    async def handler(event, data):
        seen.update(data)
        return "handled"

    result = await middleware(handler, _message(1000, username="ivan"), {})

    assert result == "handled"
    assert seen["db_user"].telegram_id == 1000
    assert seen["db_user"].chat_id == 10000
    assert seen["db_user"].account_name == "ivan"
    assert seen["is_admin"] is True

    subscriptions = await UserService(session_factory=session_factory).list_subscriptions(seen["db_user"].id)
    assert [subscription.type for subscription in subscriptions] == ["FREE"]


async def test_middleware_skips_bots(session_factory) -> None:
    middleware = AuthMiddleware(UserService(session_factory=session_factory))
    seen = {}

    async def handler(event, data):
        seen.update(data)

    await middleware(handler, _message(77, is_bot=True), {})

    assert "db_user" not in seen


async def test_dispatcher_carries_services(session_factory, stub_provisioning) -> None:
    services = build_services(session_factory=session_factory, provisioning=stub_provisioning)

    dp = await setup_dispatcher(services, storage=MemoryStorage())

    assert dp["services"] is services
    assert dp.callback_query.handlers
    assert dp.message.handlers
