import json
from typing import Any

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from vpn_shop.config import settings
from vpn_shop.database.models import AdminPromoType
from vpn_shop.services.container import build_services
from vpn_shop.webserver.admin_api import create_admin_router, require_api_token
from vpn_shop.webserver.schemas import PromoCreateRequest


def _build_request(headers: dict[str, str] | None = None) -> Request:
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "method": "GET",
        "path": "/admin/topups/1",
        "headers": [
            (k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()
        ],
    }

    async def receive() -> dict[str, Any]:
        return {"type": "http.request", "body": b"", "more_body": False}

    return Request(scope, receive)


def _get_route(router, path: str, method: str):
    for route in router.routes:
        if getattr(route, "path", "") == path and method in getattr(route, "methods", set()):
            return route
    raise AssertionError(f"Route {path} with method {method} not found")


@pytest.fixture
def services(session_factory, stub_provisioning):
    return build_services(session_factory=session_factory, provisioning=stub_provisioning)


@pytest.mark.anyio
async def test_token_is_required_when_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "s3cret", raising=False)

    assert await require_api_token(_build_request(), "s3cret") == "s3cret"
    assert await require_api_token(_build_request({"Authorization": "Bearer s3cret"}), None) == "s3cret"

    with pytest.raises(HTTPException) as exc:
        await require_api_token(_build_request(), "wrong")
    assert exc.value.status_code == 401

    with pytest.raises(HTTPException) as exc:
        await require_api_token(_build_request(), None)
    assert exc.value.status_code == 401


@pytest.mark.anyio
async def test_api_disabled_without_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", None, raising=False)

    with pytest.raises(HTTPException) as exc:
        await require_api_token(_build_request(), "anything")
    assert exc.value.status_code == 503


@pytest.mark.anyio
async def test_approve_topup_credits_once(services, make_user, make_topup, get_balance) -> None:
    router = create_admin_router()
    approve = _get_route(router, "/admin/topups/{topup_id}/approve", "POST")
    user_id = await make_user(1101)
    topup_id = await make_topup(user_id, 5000)

    first = await approve.endpoint(topup_id=topup_id, services=services)
    second = await approve.endpoint(topup_id=topup_id, services=services)

    assert first.changed is True
    assert second.changed is False
    assert second.status == "already_credited"
    assert await get_balance(user_id) == 5000

    with pytest.raises(HTTPException) as exc:
        await approve.endpoint(topup_id=999, services=services)
    assert exc.value.status_code == 404


@pytest.mark.anyio
async def test_fail_and_delete_topup(services, make_user, make_topup) -> None:
    router = create_admin_router()
    fail = _get_route(router, "/admin/topups/{topup_id}/fail", "POST")
    delete = _get_route(router, "/admin/topups/{topup_id}", "DELETE")
    get = _get_route(router, "/admin/topups/{topup_id}", "GET")
    user_id = await make_user(1102)
    topup_id = await make_topup(user_id, 5000)

    failed = await fail.endpoint(topup_id=topup_id, services=services)
    fetched = await get.endpoint(topup_id=topup_id, services=services)
    deleted = await delete.endpoint(topup_id=topup_id, services=services)

    assert failed.changed is True
    assert fetched.status == "FAILED"
    assert deleted.removed_bonuses == 0
    with pytest.raises(HTTPException):
        await get.endpoint(topup_id=topup_id, services=services)


@pytest.mark.anyio
async def test_create_promo_via_api(services) -> None:
    router = create_admin_router()
    create = _get_route(router, "/admin/promos", "POST")

    promo = await create.endpoint(
        payload=PromoCreateRequest(type=AdminPromoType.DAYS, days=14, code="fortnight"),
        services=services,
    )

    assert promo.code == "FORTNIGHT"
    assert promo.days == 14
    assert json.loads(promo.model_dump_json())["type"] == "DAYS"
