import logging

import redis.asyncio as redis
from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.fsm.storage.base import BaseStorage
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.fsm.storage.redis import RedisStorage

from vpn_shop.config import settings
from vpn_shop.handlers import admin, balance, menu, promocode, subscription
from vpn_shop.middlewares.auth import AuthMiddleware
from vpn_shop.services.container import ServiceContainer

logger = logging.getLogger(__name__)


def create_bot() -> Bot:
    return Bot(
        token=settings.BOT_TOKEN,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )


async def create_storage() -> BaseStorage:
    try:
        redis_client = redis.from_url(settings.REDIS_URL)
        await redis_client.ping()
        logger.info("Подключено к Redis для FSM storage")
        return RedisStorage(redis_client)
    except Exception as e:
        logger.warning("Не удалось подключиться к Redis: %s", e)
        logger.info("Используется MemoryStorage для FSM")
        return MemoryStorage()


async def setup_dispatcher(services: ServiceContainer, storage: BaseStorage = None) -> Dispatcher:
    if storage is None:
        storage = await create_storage()

    # services попадает в workflow_data и приходит в хендлеры аргументом
    dp = Dispatcher(storage=storage, services=services)

    auth_middleware = AuthMiddleware(services.users)
    dp.message.middleware(auth_middleware)
    dp.callback_query.middleware(auth_middleware)

    admin.register_handlers(dp)
    menu.register_handlers(dp)
    subscription.register_handlers(dp)
    balance.register_handlers(dp)
    promocode.register_handlers(dp)

    logger.info("Бот успешно настроен")
    return dp
