import pytest

from vpn_shop.services.event_bus import EventBus, TopUpCredited, TopUpFailed


@pytest.mark.anyio
async def test_failing_handler_does_not_block_others() -> None:
    bus = EventBus()
    received = []

    async def broken(event):
        raise RuntimeError("boom")

    async def working(event):
        received.append(event)

    bus.subscribe(TopUpCredited, broken)
    bus.subscribe(TopUpCredited, working)

    event = TopUpCredited(topup_id=1, user_id=2, amount_kopeks=300)
    await bus.publish(event)

    assert received == [event]


@pytest.mark.anyio
async def test_events_are_routed_by_type() -> None:
    bus = EventBus()
    credited = []

    async def handler(event):
        credited.append(event)

    bus.subscribe(TopUpCredited, handler)
    await bus.publish(TopUpFailed(topup_id=1, user_id=2, amount_kopeks=300))
    assert credited == []

    bus.unsubscribe(TopUpCredited, handler)
    await bus.publish(TopUpCredited(topup_id=1, user_id=2, amount_kopeks=300))
    assert credited == []
