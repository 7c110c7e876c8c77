import json

import pytest

from ticketflow.events import ALL_EVENTS, DomainEvent, EventBus, EventType, RedisEventPublisher


def _event(event_type: EventType = EventType.TICKET_CREATED, **kwargs: object) -> DomainEvent:
    return DomainEvent(type=event_type, **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_handlers_run_in_subscription_order() -> None:
    bus = EventBus()
    calls: list[str] = []

    async def first(event: DomainEvent) -> None:
        calls.append("first")

    def everything(event: DomainEvent) -> None:
        calls.append("all")

    def second(event: DomainEvent) -> None:
        calls.append("second")

    bus.subscribe("ticket:created", first)
    bus.subscribe(ALL_EVENTS, everything)
    bus.subscribe(EventType.TICKET_CREATED, second)
    bus.subscribe("ticket:deleted", lambda e: calls.append("wrong"))

    await bus.emit(_event())
    assert calls == ["first", "all", "second"]


@pytest.mark.asyncio
async def test_unsubscribe() -> None:
    bus = EventBus()
    calls: list[DomainEvent] = []
    bus.subscribe("ticket:created", calls.append)
    bus.unsubscribe("ticket:created", calls.append)
    bus.unsubscribe("ticket:created", calls.append)

    await bus.emit(_event())
    assert calls == []


@pytest.mark.asyncio
async def test_failing_handler_is_logged_and_skipped_by_default(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()
    calls: list[str] = []

    def broken(event: DomainEvent) -> None:
        raise RuntimeError("boom")

    bus.subscribe("ticket:created", broken)
    bus.subscribe("ticket:created", lambda e: calls.append("after"))

    await bus.emit(_event())
    assert calls == ["after"]
    assert "ticket:created" in caplog.text


@pytest.mark.asyncio
async def test_failing_handler_propagates_when_configured() -> None:
    bus = EventBus(propagate_errors=True)

    async def broken(event: DomainEvent) -> None:
        raise RuntimeError("boom")

    bus.subscribe("ticket:created", broken)
    with pytest.raises(RuntimeError, match="boom"):
        await bus.emit(_event())


class FakeRedis:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, message))
        return 1


@pytest.mark.asyncio
async def test_redis_publisher_uses_board_channel() -> None:
    redis = FakeRedis()
    publisher = RedisEventPublisher(redis, channel_prefix="tf")

    await publisher(_event(board_id="b1", data={"labels": {"x"}}))
    await publisher(_event(EventType.BOARD_DELETED))

    assert [c for c, _ in redis.published] == ["tf:board:b1", "tf:events"]
    payload = json.loads(redis.published[0][1])
    assert payload["type"] == "ticket:created"
    assert payload["data"] == {"labels": ["x"]}


@pytest.mark.asyncio
async def test_redis_publish_failure_is_swallowed() -> None:
    publisher = RedisEventPublisher(FakeRedis(fail=True))
    await publisher(_event(board_id="b1"))
