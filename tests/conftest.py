"""Общие фикстуры: временная SQLite-база, шина событий и заглушка панелей."""

import os
import sys
import tempfile
from pathlib import Path
from typing import Optional

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

_TMP_DIR = tempfile.mkdtemp(prefix="vpn_shop_tests_")

os.environ.setdefault("BOT_TOKEN", "123456:test-token")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP_DIR}/default.db")
os.environ.setdefault("LOG_FILE", f"{_TMP_DIR}/bot.log")
os.environ.setdefault("PAYMENT_LOG_FILE", f"{_TMP_DIR}/payments.log")
os.environ.setdefault("ADMIN_IDS", "1000")

from vpn_shop.config import settings  # noqa: E402
from vpn_shop.database.crud.topup import create_topup  # noqa: E402
from vpn_shop.database.crud.user import credit_balance, get_or_create_user, get_user_balance  # noqa: E402
from vpn_shop.database.database import create_engine_for_url, create_session_factory, init_db  # noqa: E402
from vpn_shop.services.event_bus import EventBus  # noqa: E402
from vpn_shop.services.provisioning_service import ExtensionResult, ProvisioningResult  # noqa: E402


class StubProvisioning:
    """Панели без сети: фиксированные ссылки и результат продления."""

    def __init__(
        self,
        url_1: Optional[str] = "https://panel1.example/sub/token-1",
        url_2: Optional[str] = "https://vpn.example/sub/token-2",
        extension: Optional[ExtensionResult] = None,
    ):
        self.url_1 = url_1
        self.url_2 = url_2
        self.extension = extension or ExtensionResult(panel_1=True, panel_2=True)
        self.created = []
        self.extended = []
        self.extend_targets = []

    async def create_on_both_panels(self, spec):
        self.created.append(spec)
        return ProvisioningResult(subscription_url=self.url_1, subscription_url_2=self.url_2)

    async def extend_on_both_panels(self, account_name, duration_days, target_end=None):
        self.extended.append((account_name, duration_days))
        self.extend_targets.append(target_end)
        return self.extension


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def db_engine(anyio_backend, tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def stub_provisioning() -> StubProvisioning:
    return StubProvisioning()


@pytest.fixture
def make_user(session_factory):
    async def _make_user(telegram_id: int, balance_kopeks: int = 0) -> int:
        async with session_factory() as db:
            user, _ = await get_or_create_user(db, telegram_id, chat_id=telegram_id)
            user_id = user.id
            if balance_kopeks:
                await credit_balance(db, user_id, balance_kopeks)
                await db.commit()
        return user_id

    return _make_user


@pytest.fixture
def make_topup(session_factory):
    async def _make_topup(user_id: int, amount_kopeks: int) -> int:
        async with session_factory() as db:
            topup = await create_topup(db, user_id, amount_kopeks)
            return topup.id

    return _make_topup


@pytest.fixture
def get_balance(session_factory):
    async def _get_balance(user_id: int) -> int:
        async with session_factory() as db:
            balance = await get_user_balance(db, user_id)
            await db.commit()
        return balance

    return _get_balance


@pytest.fixture(autouse=True)
def plan_prices(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "PLAN_M1_PRICE", 120)
    monkeypatch.setattr(settings, "PLAN_M3_PRICE", 330)
    monkeypatch.setattr(settings, "PLAN_M6_PRICE", 600)
    monkeypatch.setattr(settings, "PLAN_M12_PRICE", 1000)
    monkeypatch.setattr(settings, "REFERRAL_BONUS_PERCENT", 20)
    monkeypatch.setattr(settings, "REFERRAL_TRIAL_DAYS", 3)


@pytest.fixture
def provisioning_factory():
    return StubProvisioning
