import asyncio
from datetime import datetime, timedelta

import pytest

from vpn_shop.database.crud.subscription import create_subscription, get_subscription_by_id
from vpn_shop.database.models import SubscriptionType
from vpn_shop.services.provisioning_service import ExtensionResult
from vpn_shop.services.subscription_purchase_service import (
    PurchaseStatus,
    SubscriptionPurchaseService,
    UnknownPlanError,
)
from vpn_shop.utils.dates import add_months

pytestmark = pytest.mark.anyio


async def _load_subscription(session_factory, subscription_id):
    async with session_factory() as db:
        subscription = await get_subscription_by_id(db, subscription_id)
        await db.commit()
    return subscription


async def _add_paid_subscription(session_factory, user_id, end_date):
    async with session_factory() as db:
        subscription = await create_subscription(
            db,
            user_id,
            SubscriptionType.M1.value,
            end_date - timedelta(days=30),
            end_date,
        )
        subscription_id = subscription.id
        await db.commit()
    return subscription_id


async def test_purchase_with_zero_balance_reports_shortfall(
    session_factory, stub_provisioning, make_user, get_balance
):
    service = SubscriptionPurchaseService(stub_provisioning, session_factory=session_factory)
    user_id = await make_user(601)

    result = await service.purchase(user_id, "M1")

    assert result.status == PurchaseStatus.INSUFFICIENT_FUNDS
    assert result.missing_kopeks == 120
    assert result.price_kopeks == 120
    assert await get_balance(user_id) == 0
    assert stub_provisioning.created == []


async def test_purchase_debits_and_provisions(session_factory, stub_provisioning, make_user, get_balance):
    service = SubscriptionPurchaseService(stub_provisioning, session_factory=session_factory)
    user_id = await make_user(602, balance_kopeks=500)

    before = datetime.utcnow()
    result = await service.purchase(user_id, "M3")

    assert result.success
    assert result.provisioning_degraded is False
    assert await get_balance(user_id) == 170
    assert result.end_date >= add_months(before, 3)

    subscription = await _load_subscription(session_factory, result.subscription_id)
    assert subscription.type == "M3"
    assert subscription.subscription_url == stub_provisioning.url_1
    assert subscription.subscription_url_2 == stub_provisioning.url_2
    assert stub_provisioning.created[0].account_name == f"602_M3_{result.subscription_id}"


async def test_concurrent_purchases_never_overspend(session_factory, stub_provisioning, make_user, get_balance):
    service = SubscriptionPurchaseService(stub_provisioning, session_factory=session_factory)
    user_id = await make_user(603, balance_kopeks=300)

    results = await asyncio.gather(*(service.purchase(user_id, "M1") for _ in range(5)))

    statuses = [result.status for result in results]
    assert statuses.count(PurchaseStatus.SUCCESS) == 2
    assert statuses.count(PurchaseStatus.INSUFFICIENT_FUNDS) == 3
    assert await get_balance(user_id) == 60


async def test_partial_provisioning_still_succeeds(session_factory, make_user, provisioning_factory):
    provisioning = provisioning_factory(url_2=None)
    service = SubscriptionPurchaseService(provisioning, session_factory=session_factory)
    user_id = await make_user(604, balance_kopeks=120)

    result = await service.purchase(user_id, "M1")

    assert result.success
    assert result.provisioning_degraded is True
    subscription = await _load_subscription(session_factory, result.subscription_id)
    assert subscription.subscription_url == provisioning.url_1
    assert subscription.subscription_url_2 is None


async def test_provisioning_crash_keeps_paid_subscription(
    session_factory, make_user, get_balance, provisioning_factory
):
    class BrokenProvisioning(provisioning_factory):
        async def create_on_both_panels(self, spec):
            raise RuntimeError("panels are down")

    service = SubscriptionPurchaseService(BrokenProvisioning(), session_factory=session_factory)
    user_id = await make_user(605, balance_kopeks=120)

    result = await service.purchase(user_id, "M1")

    assert result.success
    assert result.provisioning_degraded is True
    assert await get_balance(user_id) == 0
    subscription = await _load_subscription(session_factory, result.subscription_id)
    assert subscription.has_urls is False


async def test_unknown_plan_is_rejected(session_factory, stub_provisioning, make_user):
    service = SubscriptionPurchaseService(stub_provisioning, session_factory=session_factory)
    user_id = await make_user(606, balance_kopeks=1000)

    with pytest.raises(UnknownPlanError):
        await service.purchase(user_id, "M2")


async def test_extend_expired_subscription_starts_from_now(
    session_factory, stub_provisioning, make_user, get_balance
):
    service = SubscriptionPurchaseService(stub_provisioning, session_factory=session_factory)
    user_id = await make_user(607, balance_kopeks=120)
    old_end = datetime.utcnow() - timedelta(days=10)
    subscription_id = await _add_paid_subscription(session_factory, user_id, old_end)

    before = datetime.utcnow()
    result = await service.extend(subscription_id, user_id, "M1")
    after = datetime.utcnow()

    assert result.success
    assert add_months(before, 1) <= result.end_date <= add_months(after, 1)
    assert result.end_date > add_months(old_end, 1)
    assert await get_balance(user_id) == 0

    account_name, days = stub_provisioning.extended[0]
    assert account_name == f"607_M1_{subscription_id}"
    assert 28 <= days <= 31
    assert stub_provisioning.extend_targets == [result.end_date]


async def test_extend_active_subscription_adds_to_end_date_and_rearms_reminders(
    session_factory, stub_provisioning, make_user
):
    service = SubscriptionPurchaseService(stub_provisioning, session_factory=session_factory)
    user_id = await make_user(608, balance_kopeks=330)
    old_end = datetime.utcnow() + timedelta(days=2)
    subscription_id = await _add_paid_subscription(session_factory, user_id, old_end)

    async with session_factory() as db:
        subscription = await get_subscription_by_id(db, subscription_id)
        subscription.notified_3_days = True
        subscription.notified_1_day = True
        await db.commit()

    result = await service.extend(subscription_id, user_id, "M3")

    assert result.success
    assert result.end_date == add_months(old_end, 3)
    subscription = await _load_subscription(session_factory, subscription_id)
    assert subscription.end_date == add_months(old_end, 3)
    assert subscription.notified_3_days is False
    assert subscription.notified_1_day is False


async def test_extend_rejects_foreign_and_free_subscriptions(session_factory, stub_provisioning, make_user):
    service = SubscriptionPurchaseService(stub_provisioning, session_factory=session_factory)
    owner_id = await make_user(609, balance_kopeks=1000)
    stranger_id = await make_user(610, balance_kopeks=1000)
    subscription_id = await _add_paid_subscription(
        session_factory, owner_id, datetime.utcnow() + timedelta(days=5)
    )

    foreign = await service.extend(subscription_id, stranger_id, "M1")
    assert foreign.status == PurchaseStatus.NOT_FOUND

    async with session_factory() as db:
        free_subscription = await create_subscription(
            db, owner_id, SubscriptionType.FREE.value, datetime.utcnow(), None
        )
        free_id = free_subscription.id
        await db.commit()

    free = await service.extend(free_id, owner_id, "M1")
    assert free.status == PurchaseStatus.NOT_EXTENDABLE


async def test_extend_reports_panel_failures_as_degraded(session_factory, make_user, provisioning_factory):
    provisioning = provisioning_factory(extension=ExtensionResult(panel_1=True, panel_2=False))
    service = SubscriptionPurchaseService(provisioning, session_factory=session_factory)
    user_id = await make_user(611, balance_kopeks=120)
    subscription_id = await _add_paid_subscription(
        session_factory, user_id, datetime.utcnow() + timedelta(days=5)
    )

    result = await service.extend(subscription_id, user_id, "M1")

    assert result.success
    assert result.provisioning_degraded is True


async def test_reprovision_fills_missing_url(session_factory, make_user, provisioning_factory):
    provisioning = provisioning_factory()
    service = SubscriptionPurchaseService(provisioning, session_factory=session_factory)
    user_id = await make_user(612)
    subscription_id = await _add_paid_subscription(
        session_factory, user_id, datetime.utcnow() + timedelta(days=5)
    )

    result = await service.reprovision(subscription_id, user_id)

    assert result.success
    assert result.subscription_url == provisioning.url_1
    assert result.subscription_url_2 == provisioning.url_2
    subscription = await _load_subscription(session_factory, subscription_id)
    assert subscription.is_free is False
    assert subscription.has_urls


async def test_concurrent_extends_apply_sequentially(
    session_factory, stub_provisioning, make_user, get_balance
):
    service = SubscriptionPurchaseService(stub_provisioning, session_factory=session_factory)
    user_id = await make_user(613, balance_kopeks=240)
    old_end = datetime.utcnow() + timedelta(days=10)
    subscription_id = await _add_paid_subscription(session_factory, user_id, old_end)

    results = await asyncio.gather(*(service.extend(subscription_id, user_id, "M1") for _ in range(4)))

    statuses = [result.status for result in results]
    assert statuses.count(PurchaseStatus.SUCCESS) == 2
    assert statuses.count(PurchaseStatus.INSUFFICIENT_FUNDS) == 2
    assert await get_balance(user_id) == 0

    subscription = await _load_subscription(session_factory, subscription_id)
    assert subscription.end_date == add_months(add_months(old_end, 1), 1)
    assert len(stub_provisioning.extended) == 2
