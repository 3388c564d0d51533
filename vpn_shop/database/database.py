import logging
import time
from typing import AsyncGenerator

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from vpn_shop.config import settings
from vpn_shop.database.models import Base

logger = logging.getLogger(__name__)


def _install_sqlite_locking(engine: AsyncEngine, busy_timeout_ms: int) -> None:
    """SQLite: WAL, busy_timeout и BEGIN IMMEDIATE для каждой транзакции.

    Драйвер сам не выдаёт BEGIN, поэтому пишущие транзакции сериализуются
    на уровне файла БД, а не падают с "database is locked" при апгрейде
    блокировки.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            poolclass=NullPool,
            echo=echo,
            connect_args={"timeout": settings.SQLITE_BUSY_TIMEOUT_MS / 1000},
        )
        _install_sqlite_locking(engine, settings.SQLITE_BUSY_TIMEOUT_MS)
        return engine

    return create_async_engine(
        database_url,
        poolclass=AsyncAdaptedQueuePool,
        echo=echo,
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
        connect_args={
            "server_settings": {
                "application_name": "vpn_shop",
                "statement_timeout": "60000",
                "idle_in_transaction_session_timeout": "300000",
            },
            "command_timeout": 60,
            "timeout": 10,
        },
        execution_options={"isolation_level": "READ COMMITTED"},
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_engine_for_url(settings.get_database_url(), echo=settings.DEBUG)

AsyncSessionLocal = create_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def health_check() -> dict:
    try:
        async with AsyncSessionLocal() as session:
            start = time.time()
            await session.execute(text("SELECT 1"))
            latency = (time.time() - start) * 1000
        return {"status": "healthy", "latency_ms": round(latency, 2)}
    except Exception as e:
        logger.error("❌ Проверка БД не прошла: %s", e)
        return {"status": "unhealthy", "latency_ms": None}


async def init_db(bind: AsyncEngine = None):
    logger.info("🚀 Создание таблиц базы данных...")

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("✅ База данных успешно инициализирована")


async def close_db():
    logger.info("🔄 Закрытие соединений с БД...")
    await engine.dispose()
    logger.info("✅ Все подключения к базе данных закрыты")
