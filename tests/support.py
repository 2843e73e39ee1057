"""Fakes shared by the test modules."""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Tuple

from aiomqtt import MqttError


class FakeMqttClient:
    """Stands in for ``aiomqtt.Client``; records publishes on its broker."""

    def __init__(self, broker: "FakeBroker") -> None:
        self.broker = broker
        self.connected = False
        self.socket_open = False

    async def __aenter__(self) -> "FakeMqttClient":
        self.broker.connect_attempts += 1
        self.socket_open = True
        self.broker.open_sockets += 1
        if self.broker.hang_on_connect:
            await asyncio.sleep(3600)
        if self.broker.refuse_all or self.broker.connect_attempts <= self.broker.fail_connects:
            raise MqttError("[code:5] Connection refused: not authorised")
        self.connected = True
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.connected = False
        if self.socket_open:
            self.socket_open = False
            self.broker.open_sockets -= 1

    async def publish(self, topic: str, payload: Any = None, qos: int = 0, retain: bool = False, **kwargs: Any) -> None:
        if self.broker.drop_session:
            self.broker.drop_session = False
            self.connected = False
        if not self.connected:
            raise MqttError("[code:4] Could not publish message")
        self.broker.messages.append((topic, payload, retain))


class FakeBroker:
    def __init__(self) -> None:
        self.messages: List[Tuple[str, Any, bool]] = []
        self.client_kwargs: List[Dict[str, Any]] = []
        self.connect_attempts = 0
        self.open_sockets = 0
        self.fail_connects = 0
        self.refuse_all = False
        self.hang_on_connect = False
        self.drop_session = False

    def factory(self, hostname: str, **kwargs: Any) -> FakeMqttClient:
        self.client_kwargs.append({"hostname": hostname, **kwargs})
        return FakeMqttClient(self)

    def payloads(self, topic: str) -> List[Tuple[Any, bool]]:
        return [(payload, retain) for item_topic, payload, retain in self.messages if item_topic == topic]


def queue_watch_source(queue: "asyncio.Queue[Any]"):
    """Watch source fed by a test: items are yielded, exceptions raised, ``None`` ends the stream."""

    async def source(path: Path, stop_event: asyncio.Event):
        while True:
            item = await queue.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    return source


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
