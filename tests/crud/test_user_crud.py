import pytest

from vpn_shop.database.crud.subscription import get_user_subscriptions
from vpn_shop.database.crud.user import (
    debit_balance_if_sufficient,
    ensure_user_promo_code,
    get_or_create_user,
    get_user_by_promo_code,
)
from vpn_shop.database.models import SubscriptionType

pytestmark = pytest.mark.anyio


async def test_first_contact_creates_user_with_free_subscription(session_factory):
    async with session_factory() as db:
        user, created = await get_or_create_user(db, 42, chat_id=42, account_name="alice")
        again, created_again = await get_or_create_user(db, 42, chat_id=4242, account_name="alice")
        subscriptions = await get_user_subscriptions(db, user.id)
        await db.commit()

    assert created is True
    assert created_again is False
    assert again.id == user.id
    assert again.chat_id == 4242
    assert user.balance_kopeks == 0
    assert [subscription.type for subscription in subscriptions] == [SubscriptionType.FREE.value]
    assert subscriptions[0].end_date is None


async def test_promo_code_is_assigned_once(session_factory):
    async with session_factory() as db:
        user, _ = await get_or_create_user(db, 43)
        code = await ensure_user_promo_code(db, user)
        same = await ensure_user_promo_code(db, user)
        owner = await get_user_by_promo_code(db, code)
        await db.commit()

    assert code == same
    assert len(code) == 8
    assert owner.id == user.id


async def test_debit_never_goes_negative(session_factory, make_user, get_balance):
    user_id = await make_user(44, balance_kopeks=100)

    async with session_factory() as db:
        assert await debit_balance_if_sufficient(db, user_id, 150) is False
        assert await debit_balance_if_sufficient(db, user_id, 100) is True
        await db.commit()

    assert await get_balance(user_id) == 0
