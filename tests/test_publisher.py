from __future__ import annotations

import asyncio

import pytest

from bin_agent.errors import PublishError
from bin_agent.services.publisher import SerialPublisher


class SlowConnection:
    def __init__(self, delay: float = 0.01) -> None:
        self.delay = delay
        self.calls: list[tuple[str, str, bool]] = []
        self.active = 0
        self.max_active = 0
        self.gate = asyncio.Event()
        self.gate.set()
        self.reject: set[str] = set()

    async def publish(self, topic: str, payload: str, *, retain: bool = False) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.gate.wait()
            await asyncio.sleep(self.delay)
            if payload in self.reject:
                raise PublishError(f"broker rejected {payload}")
            self.calls.append((topic, payload, retain))
        finally:
            self.active -= 1


def test_publishes_are_serialized_in_arrival_order() -> None:
    connection = SlowConnection()

    async def runner() -> None:
        publisher = SerialPublisher(connection)
        publisher.start()
        try:
            await asyncio.gather(*(publisher.publish("state", str(i)) for i in range(10)))
        finally:
            await publisher.stop()
        assert publisher.published_count == 10

    asyncio.run(runner())

    assert connection.max_active == 1
    assert [payload for _, payload, _ in connection.calls] == [str(i) for i in range(10)]


def test_failure_is_reported_to_its_caller_only() -> None:
    connection = SlowConnection(delay=0)
    connection.reject = {"bad"}

    async def runner() -> None:
        publisher = SerialPublisher(connection)
        publisher.start()
        try:
            results = await asyncio.gather(
                publisher.publish("state", "good"),
                publisher.publish("state", "bad"),
                publisher.publish("config", "after", retain=True),
                return_exceptions=True,
            )
        finally:
            await publisher.stop()
        assert results[0] is None
        assert isinstance(results[1], PublishError)
        assert results[2] is None
        assert publisher.failed_count == 1
        assert "bad" in publisher.last_error

    asyncio.run(runner())

    assert connection.calls == [("state", "good", False), ("config", "after", True)]


def test_publish_before_start_fails() -> None:
    publisher = SerialPublisher(SlowConnection())

    with pytest.raises(PublishError):
        asyncio.run(publisher.publish("state", "1"))


def test_full_queue_rejects_new_requests() -> None:
    connection = SlowConnection(delay=0)

    async def runner() -> None:
        connection.gate.clear()
        publisher = SerialPublisher(connection, max_pending=1)
        publisher.start()
        first = asyncio.create_task(publisher.publish("state", "1"))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(publisher.publish("state", "2"))
        await asyncio.sleep(0)

        with pytest.raises(PublishError):
            await publisher.publish("state", "3")

        connection.gate.set()
        await asyncio.gather(first, second)
        await publisher.stop()

    asyncio.run(runner())

    assert [payload for _, payload, _ in connection.calls] == ["1", "2"]


def test_stop_fails_pending_requests() -> None:
    connection = SlowConnection(delay=0)

    async def runner() -> None:
        connection.gate.clear()
        publisher = SerialPublisher(connection)
        publisher.start()
        in_flight = asyncio.create_task(publisher.publish("state", "1"))
        queued = asyncio.create_task(publisher.publish("state", "2"))
        await asyncio.sleep(0.01)

        await publisher.stop()

        results = await asyncio.gather(in_flight, queued, return_exceptions=True)
        assert all(isinstance(result, PublishError) for result in results)
        assert not publisher.running

    asyncio.run(runner())

    assert connection.calls == []
