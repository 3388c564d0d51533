from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest

from vpn_shop.handlers.promocode import format_activation_result, process_promocode
from vpn_shop.services.promocode_service import PromoActivationResult, PromoActivationStatus


class DummyMessage:
    def __init__(self, text: str) -> None:
        self.text = text
        self.calls: list[tuple[str, Dict[str, Any]]] = []

    async def answer(self, text: str, **kwargs: Any) -> None:
        self.calls.append((text, kwargs))


class DummyState:
    def __init__(self) -> None:
        self.cleared = False

    async def clear(self) -> None:
        self.cleared = True


def test_format_balance_activation() -> None:
    result = PromoActivationResult(PromoActivationStatus.BALANCE_ACTIVATED, "GIFT", amount_kopeks=5000)

    assert "50 ₽" in format_activation_result(result)


def test_format_days_activation_lists_links() -> None:
    result = PromoActivationResult(
        PromoActivationStatus.DAYS_ACTIVATED,
        "WEEK",
        days=7,
        subscription_id=12,
        subscription_url="https://panel1/sub/a",
    )

    text = format_activation_result(result)

    assert "#12" in text
    assert "https://panel1/sub/a" in text
    assert "Сервер 2" not in text


@pytest.mark.anyio
async def test_process_promocode_activates_and_clears_state() -> None:
    activate = AsyncMock(
        return_value=PromoActivationResult(PromoActivationStatus.SELF_ACTIVATION, "MYCODE")
    )
    services = SimpleNamespace(promocodes=SimpleNamespace(activate_promo_code=activate))
    db_user = SimpleNamespace(id=5, telegram_id=500)
    message = DummyMessage(" mycode ")
    state = DummyState()

    await process_promocode(message, db_user=db_user, state=state, services=services)

    activate.assert_awaited_once_with(5, "mycode")
    assert message.calls[0][0] == "❌ Нельзя активировать собственный промокод"
    assert state.cleared is True


@pytest.mark.anyio
async def test_empty_message_keeps_waiting_for_code() -> None:
    activate = AsyncMock()
    services = SimpleNamespace(promocodes=SimpleNamespace(activate_promo_code=activate))
    message = DummyMessage("   ")
    state = DummyState()

    await process_promocode(message, db_user=SimpleNamespace(id=5), state=state, services=services)

    activate.assert_not_awaited()
    assert state.cleared is False
    assert message.calls[0][0] == "❌ Введите корректный промокод"
