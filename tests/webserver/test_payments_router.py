import json
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import pytest
from starlette.requests import Request

from vpn_shop.config import settings
from vpn_shop.webserver.payments import create_payment_router


@pytest.fixture(autouse=True)
def platega_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "PLATEGA_WEBHOOK_PATH", "/platega-webhook", raising=False)
    monkeypatch.setattr(settings, "PLATEGA_MERCHANT_ID", "merchant", raising=False)
    monkeypatch.setattr(settings, "PLATEGA_SECRET", "secret", raising=False)


def _get_route(router, path: str, method: str = "POST"):
    for route in router.routes:
        if getattr(route, "path", "") == path and method in getattr(route, "methods", set()):
            return route
    raise AssertionError(f"Route {path} with method {method} not found")


def _build_request(path: str, body: bytes, headers: dict[str, str] | None = None) -> Request:
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "method": "POST",
        "path": path,
        "headers": [
            (k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()
        ],
    }

    async def receive() -> dict[str, Any]:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


_AUTH_HEADERS = {"X-MerchantId": "merchant", "X-Secret": "secret"}


def _route(process_result=True):
    service = SimpleNamespace(process_postback=AsyncMock(return_value=process_result))
    router = create_payment_router(service)
    return service, _get_route(router, "/platega-webhook")


@pytest.mark.anyio
async def test_postback_with_wrong_secret_is_rejected() -> None:
    service, route = _route()
    request = _build_request(
        "/platega-webhook",
        json.dumps({"id": "order", "status": "CONFIRMED"}).encode("utf-8"),
        headers={"X-MerchantId": "merchant", "X-Secret": "wrong"},
    )

    response = await route.endpoint(request)

    assert response.status_code == 401
    assert json.loads(response.body) == {"status": "error", "reason": "unauthorized"}
    service.process_postback.assert_not_awaited()


@pytest.mark.anyio
async def test_postback_with_broken_json() -> None:
    service, route = _route()
    request = _build_request("/platega-webhook", b"{not json", headers=_AUTH_HEADERS)

    response = await route.endpoint(request)

    assert response.status_code == 400
    assert json.loads(response.body)["reason"] == "invalid_json"
    service.process_postback.assert_not_awaited()


@pytest.mark.anyio
async def test_postback_with_invalid_utf8_body() -> None:
    service, route = _route()
    request = _build_request(
        "/platega-webhook",
        b'{"id": "\xff\xfe", "status": "CONFIRMED"}',
        headers=_AUTH_HEADERS,
    )

    response = await route.endpoint(request)

    assert response.status_code == 400
    assert json.loads(response.body)["reason"] == "invalid_json"
    service.process_postback.assert_not_awaited()


@pytest.mark.anyio
async def test_postback_is_processed() -> None:
    service, route = _route(process_result=True)
    payload = {"id": "order-1", "status": "CONFIRMED"}
    request = _build_request("/platega-webhook", json.dumps(payload).encode("utf-8"), headers=_AUTH_HEADERS)

    response = await route.endpoint(request)

    assert response.status_code == 200
    assert json.loads(response.body) == {"status": "ok"}
    service.process_postback.assert_awaited_once_with(payload)


@pytest.mark.anyio
async def test_unprocessed_postback_returns_400() -> None:
    _, route = _route(process_result=False)
    request = _build_request(
        "/platega-webhook",
        json.dumps({"id": "unknown", "status": "CONFIRMED"}).encode("utf-8"),
        headers=_AUTH_HEADERS,
    )

    response = await route.endpoint(request)

    assert response.status_code == 400
    assert json.loads(response.body)["reason"] == "not_processed"


@pytest.mark.anyio
async def test_processing_error_is_reported_as_not_processed() -> None:
    service = SimpleNamespace(process_postback=AsyncMock(side_effect=RuntimeError("db down")))
    route = _get_route(create_payment_router(service), "/platega-webhook")
    request = _build_request(
        "/platega-webhook",
        json.dumps({"id": "order", "status": "CONFIRMED"}).encode("utf-8"),
        headers=_AUTH_HEADERS,
    )

    response = await route.endpoint(request)

    assert response.status_code == 400
