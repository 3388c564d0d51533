import pytest

from vpn_shop.config import settings
from vpn_shop.database.models import TopUpStatus
from vpn_shop.services.credit_service import CreditService
from vpn_shop.services.payment_service import PaymentService
from vpn_shop.services.platega_service import PlategaPayment, truncate_utf8

pytestmark = pytest.mark.anyio


class FakePlatega:
    def __init__(self, configured=True, response=None, remote=None):
        self.is_configured = configured
        self.response = response
        self.remote = remote
        self.payments = []
        self.lookups = []

    async def create_payment(self, **kwargs):
        self.payments.append(kwargs)
        return self.response

    async def get_transaction_status(self, transaction_id):
        self.lookups.append(transaction_id)
        return self.remote


def _payments(session_factory, event_bus, platega):
    credit = CreditService(event_bus, session_factory=session_factory)
    return PaymentService(credit, platega_service=platega, session_factory=session_factory)


async def test_invoice_falls_back_to_manual_link_without_provider(session_factory, event_bus, make_user):
    platega = FakePlatega(configured=False)
    service = _payments(session_factory, event_bus, platega)
    user_id = await make_user(1001)

    invoice = await service.create_invoice(user_id, 27000)

    assert invoice.is_fallback
    assert invoice.payment_url == settings.get_manual_payment_url(invoice.order_id)
    assert invoice.bill_id == f"fallback-{invoice.order_id}"
    assert platega.payments == []

    topup = await service.get_topup(invoice.topup_id)
    assert topup.status == TopUpStatus.PENDING.value
    assert topup.is_fallback


async def test_invoice_uses_provider_redirect(session_factory, event_bus, make_user):
    platega = FakePlatega(response=PlategaPayment("https://pay.example/tx/1", "tx-1"))
    service = _payments(session_factory, event_bus, platega)
    user_id = await make_user(1002)

    invoice = await service.create_invoice(user_id, 10000)

    assert invoice.is_fallback is False
    assert invoice.payment_url == "https://pay.example/tx/1"
    assert invoice.bill_id == "tx-1"
    assert platega.payments[0]["order_id"] == invoice.order_id
    assert platega.payments[0]["amount_kopeks"] == 10000
    assert platega.payments[0]["payload"] == str(user_id)


async def test_invalid_amount_creates_nothing(session_factory, event_bus, make_user):
    service = _payments(session_factory, event_bus, FakePlatega())
    user_id = await make_user(1003)

    assert await service.create_invoice(user_id, 0) is None
    assert await service.create_invoice(user_id, settings.TOPUP_MAX_AMOUNT_KOPEKS + 1) is None


async def test_postback_confirmed_credits_once(session_factory, event_bus, make_user, get_balance):
    platega = FakePlatega(response=PlategaPayment("https://pay.example/tx/2", "tx-2"))
    service = _payments(session_factory, event_bus, platega)
    user_id = await make_user(1004)
    invoice = await service.create_invoice(user_id, 10000)

    assert await service.process_postback({"id": invoice.order_id, "status": "CONFIRMED"})
    assert await service.process_postback({"transactionId": "tx-2", "status": "confirmed"})

    assert await get_balance(user_id) == 10000
    topup = await service.get_topup(invoice.topup_id)
    assert topup.credited is True


async def test_postback_canceled_marks_failed(session_factory, event_bus, make_user, get_balance):
    service = _payments(session_factory, event_bus, FakePlatega(configured=False))
    user_id = await make_user(1005)
    invoice = await service.create_invoice(user_id, 10000)

    assert await service.process_postback({"id": invoice.order_id, "status": "CANCELED"})

    topup = await service.get_topup(invoice.topup_id)
    assert topup.status == TopUpStatus.FAILED.value
    assert await get_balance(user_id) == 0


async def test_postback_rejects_unknown_order_or_status(session_factory, event_bus, make_user):
    service = _payments(session_factory, event_bus, FakePlatega(configured=False))
    user_id = await make_user(1006)
    invoice = await service.create_invoice(user_id, 10000)

    assert await service.process_postback({"id": "missing-order", "status": "CONFIRMED"}) is False
    assert await service.process_postback({"id": invoice.order_id, "status": "WHATEVER"}) is False
    assert await service.process_postback({"status": "CONFIRMED"}) is False


async def test_check_topup_polls_provider(session_factory, event_bus, make_user, get_balance):
    platega = FakePlatega(
        response=PlategaPayment("https://pay.example/tx/3", "tx-3"),
        remote="CONFIRMED",
    )
    service = _payments(session_factory, event_bus, platega)
    user_id = await make_user(1007)
    stranger_id = await make_user(1008)
    invoice = await service.create_invoice(user_id, 10000)

    assert await service.check_topup(invoice.topup_id, stranger_id) is None

    state = await service.check_topup(invoice.topup_id, user_id)

    assert platega.lookups == ["tx-3"]
    assert state.status == TopUpStatus.SUCCESS.value
    assert state.credited is True
    assert await get_balance(user_id) == 10000


def test_description_is_truncated_on_character_boundary():
    text = "Пополнение баланса на 270 ₽ для пользователя"

    truncated = truncate_utf8(text, 64)

    assert len(truncated.encode("utf-8")) <= 64
    assert text.startswith(truncated)
    assert truncate_utf8("  short  ", 64) == "short"
