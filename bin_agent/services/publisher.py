"""Single-writer publish queue in front of the broker connection."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from bin_agent.errors import PublishError

logger = logging.getLogger(__name__)


class Publishable(Protocol):
    async def publish(self, topic: str, payload: str, *, retain: bool = False) -> None: ...


@dataclass
class PublishRequest:
    topic: str
    payload: str
    retain: bool
    done: asyncio.Future = field(repr=False)


class SerialPublisher:
    """Funnels publishes from every trigger loop through one consumer task.

    Callers await the outcome of their own request; requests are attempted in
    arrival order and never overlap on the session.
    """

    def __init__(self, connection: Publishable, *, max_pending: int = 64) -> None:
        self.connection = connection
        self._queue: asyncio.Queue[PublishRequest] = asyncio.Queue(maxsize=max_pending)
        self._task: asyncio.Task | None = None
        self.published_count = 0
        self.failed_count = 0
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="mqtt-publisher")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        while not self._queue.empty():
            request = self._queue.get_nowait()
            if not request.done.done():
                request.done.set_exception(PublishError(f"publisher stopped before sending to {request.topic}"))

    async def publish(self, topic: str, payload: str, *, retain: bool = False) -> None:
        if not self.running:
            raise PublishError(f"cannot publish to {topic}: publisher is not running")
        request = PublishRequest(topic, payload, retain, asyncio.get_running_loop().create_future())
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull as exc:
            raise PublishError(f"cannot publish to {topic}: {self._queue.maxsize} requests already pending") from exc
        await request.done

    async def _run(self) -> None:
        while True:
            request = await self._queue.get()
            try:
                await self.connection.publish(request.topic, request.payload, retain=request.retain)
            except asyncio.CancelledError:
                if not request.done.done():
                    request.done.set_exception(PublishError(f"publisher stopped while sending to {request.topic}"))
                raise
            except PublishError as exc:
                self._record_failure(request, exc)
            except Exception as exc:
                logger.exception("Unexpected error publishing to %s", request.topic)
                self._record_failure(request, PublishError(f"publish to {request.topic} failed: {exc}"))
            else:
                self.published_count += 1
                logger.debug("Published %s (retain=%s)", request.topic, request.retain)
                if not request.done.done():
                    request.done.set_result(None)
            finally:
                self._queue.task_done()

    def _record_failure(self, request: PublishRequest, exc: PublishError) -> None:
        self.failed_count += 1
        self.last_error = str(exc)
        if not request.done.done():
            request.done.set_exception(exc)
