from datetime import datetime, timedelta

import pytest

from vpn_shop.config import settings
from vpn_shop.external.panel_api import (
    PanelAccountExists,
    PanelAccountNotFound,
    PanelAPIError,
    PanelUser,
)
from vpn_shop.services.provisioning_service import (
    AccountSpec,
    ProvisioningService,
    build_account_name,
    rewrite_panel_url,
)
from vpn_shop.utils.dates import to_epoch_seconds


class FakePanel:
    """Панель в памяти: повторяет интерфейс PanelAPI без HTTP."""

    def __init__(self, name, base_url, token, behaviour):
        self.name = name
        self.base_url = base_url
        self.token = token
        self.behaviour = behaviour
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def create_user(self, username, expire_at, inbounds, vless_flow=None, note=None):
        self.calls.append(("create", username, inbounds))
        outcome = self.behaviour.get("create")
        if isinstance(outcome, Exception):
            raise outcome
        return PanelUser(username=username, subscription_url=f"{self.base_url}/sub/{username}")

    async def get_user(self, username):
        self.calls.append(("get", username))
        return PanelUser(
            username=username,
            subscription_url=f"{self.base_url}/sub/existing-{username}",
            expire=self.behaviour.get("expire"),
        )

    async def extend_user(self, username, days):
        self.calls.append(("extend", username, days))
        outcome = self.behaviour.get("extend")
        if isinstance(outcome, Exception):
            raise outcome
        return {"username": username}


@pytest.fixture
def panels(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(settings, "PANEL_1_API_URL", "https://panel1.internal:8000")
    monkeypatch.setattr(settings, "PANEL_1_TOKEN", "token-1")
    monkeypatch.setattr(settings, "PANEL_2_API_URL", "https://panel2.internal:8000")
    monkeypatch.setattr(settings, "PANEL_2_TOKEN", None)
    monkeypatch.setattr(settings, "PANEL_2_PUBLIC_SUB_BASE", "https://vpn.example.com:8888")
    monkeypatch.setattr(settings, "PANEL_INBOUNDS", "VLESS TCP REALITY")

    behaviours = {"panel-1": {}, "panel-2": {}}
    created = {}

    def factory(name, base_url, token):
        panel = FakePanel(name, base_url, token, behaviours[name])
        created[name] = panel
        return panel

    return ProvisioningService(panel_factory=factory), behaviours, created


def _spec():
    return AccountSpec(account_name="42_M1_7", expire_at=datetime(2025, 1, 1), note="telegram_id=42")


def test_build_account_name():
    assert build_account_name(42, "M3", 7) == "42_M3_7"


def test_rewrite_panel_url_moves_token_to_public_base():
    rewritten = rewrite_panel_url("https://panel2.internal:8000/sub/abc.def", "https://vpn.example.com:8888/")

    assert rewritten == "https://vpn.example.com:8888/sub/abc.def"


def test_rewrite_panel_url_leaves_unknown_urls_alone():
    assert rewrite_panel_url("https://panel2.internal/other/abc", "https://vpn.example.com") == (
        "https://panel2.internal/other/abc"
    )
    assert rewrite_panel_url(None, "https://vpn.example.com") is None
    assert rewrite_panel_url("https://panel2/sub/abc", None) == "https://panel2/sub/abc"


@pytest.mark.anyio
async def test_create_on_both_panels_rewrites_second_url(panels):
    service, _, created = panels

    result = await service.create_on_both_panels(_spec())

    assert result.subscription_url == "https://panel1.internal:8000/sub/42_M1_7"
    assert result.subscription_url_2 == "https://vpn.example.com:8888/sub/42_M1_7"
    assert result.is_complete
    # вторая панель без своего токена использует токен первой
    assert created["panel-2"].token == "token-1"
    assert created["panel-1"].calls[0] == ("create", "42_M1_7", ["VLESS TCP REALITY"])


@pytest.mark.anyio
async def test_existing_account_is_reused(panels):
    service, behaviours, created = panels
    behaviours["panel-1"]["create"] = PanelAccountExists("exists", 409)

    result = await service.create_on_both_panels(_spec())

    assert result.subscription_url == "https://panel1.internal:8000/sub/existing-42_M1_7"
    assert ("get", "42_M1_7") in created["panel-1"].calls


@pytest.mark.anyio
async def test_one_panel_down_gives_partial_result(panels):
    service, behaviours, _ = panels
    behaviours["panel-2"]["create"] = PanelAPIError("Request failed: timeout")

    result = await service.create_on_both_panels(_spec())

    assert result.subscription_url == "https://panel1.internal:8000/sub/42_M1_7"
    assert result.subscription_url_2 is None
    assert result.has_any_url
    assert not result.is_complete


@pytest.mark.anyio
async def test_unconfigured_panel_is_skipped(panels, monkeypatch: pytest.MonkeyPatch):
    service, _, created = panels
    monkeypatch.setattr(settings, "PANEL_2_API_URL", None)

    result = await service.create_on_both_panels(_spec())
    extension = await service.extend_on_both_panels("42_M1_7", 30)

    assert result.subscription_url_2 is None
    assert "panel-2" not in created
    assert extension.panel_1 is True
    assert extension.panel_2 is None
    assert extension.any_failed is False


@pytest.mark.anyio
async def test_extend_reports_missing_account_as_failure(panels):
    service, behaviours, created = panels
    behaviours["panel-2"]["extend"] = PanelAccountNotFound("not found", 404)

    extension = await service.extend_on_both_panels("42_M1_7", 31)

    assert extension.panel_1 is True
    assert extension.panel_2 is False
    assert extension.any_failed
    assert created["panel-1"].calls == [("extend", "42_M1_7", 31)]


@pytest.mark.anyio
async def test_extend_catches_up_expired_panel_account(panels):
    service, behaviours, created = panels
    now = datetime.utcnow()
    target_end = now + timedelta(days=30)
    behaviours["panel-1"]["expire"] = to_epoch_seconds(now - timedelta(days=10))
    behaviours["panel-2"]["expire"] = to_epoch_seconds(now + timedelta(days=5))

    extension = await service.extend_on_both_panels("42_M1_7", 30, target_end=target_end)

    assert extension.panel_1 is True
    assert extension.panel_2 is True
    extend_1 = [call for call in created["panel-1"].calls if call[0] == "extend"]
    extend_2 = [call for call in created["panel-2"].calls if call[0] == "extend"]
    assert extend_1[0][2] in (40, 41)
    assert extend_2 == [("extend", "42_M1_7", 30)]
