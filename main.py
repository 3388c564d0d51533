import asyncio
import logging
import signal
import sys

from vpn_shop.bot import create_bot, setup_dispatcher
from vpn_shop.config import settings
from vpn_shop.database.database import close_db, init_db
from vpn_shop.services.container import build_services
from vpn_shop.utils.payment_logger import configure_payment_logger
from vpn_shop.webserver.server import WebAPIServer
from vpn_shop.webserver.unified_app import create_unified_app

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class GracefulExit:

    def __init__(self):
        self.exit = False

    def exit_gracefully(self, signum, frame):
        logging.getLogger(__name__).info("Получен сигнал %s. Корректное завершение работы...", signum)
        self.exit = True


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(settings.LOG_FILE, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )
    configure_payment_logger(
        logging.FileHandler(settings.PAYMENT_LOG_FILE, encoding='utf-8'),
        logging.Formatter(LOG_FORMAT),
    )
    logging.getLogger("aiogram").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


async def main():
    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("🚀 Запуск VPN Shop (БД: %s)", "SQLite" if settings.is_sqlite() else "PostgreSQL")

    killer = GracefulExit()
    signal.signal(signal.SIGINT, killer.exit_gracefully)
    signal.signal(signal.SIGTERM, killer.exit_gracefully)

    bot = None
    services = None
    web_server = None
    monitoring_task = None
    polling_task = None

    try:
        await init_db()

        bot = create_bot()
        services = build_services(bot)
        dp = await setup_dispatcher(services)

        web_server = WebAPIServer(create_unified_app(services))
        await web_server.start()

        monitoring_task = asyncio.create_task(services.monitoring.start_monitoring())
        logger.info("📋 Служба мониторинга запущена")

        polling_task = asyncio.create_task(dp.start_polling(bot, skip_updates=True))
        logger.info("🤖 Aiogram polling запущен")

        try:
            while not killer.exit:
                await asyncio.sleep(1)

                if monitoring_task.done():
                    exception = monitoring_task.exception()
                    if exception:
                        logger.error("Служба мониторинга завершилась с ошибкой: %s", exception)
                        logger.info("🔄 Перезапуск службы мониторинга...")
                        services.monitoring.is_running = False
                        monitoring_task = asyncio.create_task(services.monitoring.start_monitoring())

                if polling_task.done():
                    exception = polling_task.exception()
                    if exception:
                        logger.error("Polling завершился с ошибкой: %s", exception)
                    break

        except Exception as e:
            logger.error("Ошибка в основном цикле: %s", e)

    except Exception as e:
        logger.error("❌ Критическая ошибка при запуске: %s", e)
        raise

    finally:
        logger.info("🛑 Начинается корректное завершение работы...")

        if monitoring_task and not monitoring_task.done():
            logger.info("ℹ️ Остановка службы мониторинга...")
            services.monitoring.stop_monitoring()
            monitoring_task.cancel()
            try:
                await monitoring_task
            except asyncio.CancelledError:
                pass

        if polling_task and not polling_task.done():
            logger.info("ℹ️ Остановка polling...")
            polling_task.cancel()
            try:
                await polling_task
            except asyncio.CancelledError:
                pass

        if web_server:
            try:
                await web_server.stop()
                logger.info("✅ Веб-сервер остановлен")
            except Exception as error:
                logger.error("Ошибка остановки веб-сервера: %s", error)

        if bot:
            try:
                await bot.session.close()
                logger.info("✅ Сессия бота закрыта")
            except Exception as e:
                logger.error("Ошибка закрытия сессии бота: %s", e)

        await close_db()
        logger.info("✅ Завершение работы бота завершено")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n🛑 Бот остановлен пользователем")
    except Exception as e:
        print(f"❌ Критическая ошибка: {e}")
        sys.exit(1)
