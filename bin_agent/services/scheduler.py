"""Merge the periodic timer and file-change notifications into serialized publishes."""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from watchfiles import Change, awatch

from bin_agent.errors import PublishError, ReadError, WatchError
from bin_agent.services.discovery import DiscoveryPublisher
from bin_agent.services.publisher import SerialPublisher
from bin_agent.services.value_provider import ValueProvider

logger = logging.getLogger(__name__)

WatchSource = Callable[[Path, asyncio.Event], AsyncIterator[Any]]


class ScheduleTrigger(str, enum.Enum):
    TIMER = "timer"
    FILE_CHANGE = "file_change"


@dataclass(frozen=True)
class MeasurementEvent:
    value: str
    cause: ScheduleTrigger
    read_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


async def watchfiles_source(path: Path, stop_event: asyncio.Event) -> AsyncIterator[Any]:
    """Yield raw change batches for ``path`` until ``stop_event`` is set."""

    if not path.exists():
        raise WatchError(f"watched path {path} does not exist")
    async for changes in awatch(path, watch_filter=None, stop_event=stop_event, debounce=200, step=50):
        if not path.exists() and any(change == Change.deleted for change, _ in changes):
            raise WatchError(f"watched path {path} was removed")
        yield changes


class UpdateScheduler:
    def __init__(
        self,
        provider: ValueProvider,
        publisher: SerialPublisher,
        discovery: DiscoveryPublisher,
        *,
        state_topic: str,
        watch_path: str | Path,
        interval_seconds: float = 60.0,
        debounce_seconds: float = 1.0,
        watch_source: WatchSource = watchfiles_source,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.provider = provider
        self.publisher = publisher
        self.discovery = discovery
        self.state_topic = state_topic
        self.watch_path = Path(watch_path)
        self.interval_seconds = interval_seconds
        self.debounce_seconds = debounce_seconds
        self._watch_source = watch_source
        self._stop_event = stop_event or asyncio.Event()
        self._pending_change = asyncio.Event()
        self.raw_notifications = 0
        self.last_event: Optional[MeasurementEvent] = None

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        """Run both trigger loops until stopped; raises ``WatchError`` if the watcher dies."""

        timer = asyncio.create_task(self._run_timer(), name="update-timer")
        watcher = asyncio.create_task(self._run_watch(), name="file-watch")
        tasks = {timer, watcher}
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()  # type: ignore[misc]
        finally:
            self._stop_event.set()
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def dispatch(self, trigger: ScheduleTrigger) -> Optional[MeasurementEvent]:
        """Read once and publish; returns the event when the state publish succeeded.

        The read happens before the timer's discovery send, so a failed read
        publishes nothing at all. On success the broker still sees discovery
        before state.
        """

        try:
            value = await self.provider.read_value()
        except ReadError as exc:
            logger.warning("Skipping %s update: %s", trigger.value, exc)
            return None
        event = MeasurementEvent(value=value, cause=trigger)

        if trigger is ScheduleTrigger.TIMER:
            try:
                await self.discovery.send()
            except PublishError as exc:
                logger.warning("Failed to send discovery config: %s", exc)

        try:
            await self.publisher.publish(self.state_topic, event.value, retain=False)
        except PublishError as exc:
            logger.warning("Failed to publish bin value: %s", exc)
            return None
        self.last_event = event
        logger.debug("Published bin value %s (%s)", event.value, trigger.value)
        return event

    async def _run_timer(self) -> None:
        loop = asyncio.get_running_loop()
        next_fire = loop.time() + self.interval_seconds
        while not self._stop_event.is_set():
            if await self._sleep(next_fire - loop.time()):
                break
            try:
                await self.dispatch(ScheduleTrigger.TIMER)
            except Exception:
                logger.exception("Unhandled error in timer update")
            next_fire += self.interval_seconds
            now = loop.time()
            if next_fire <= now:
                # The iteration overran one or more periods; coalesce them.
                next_fire = now + self.interval_seconds

    async def _run_watch(self) -> None:
        pump = asyncio.create_task(self._pump_notifications(), name="file-watch-pump")
        try:
            while not self._stop_event.is_set():
                await self._wait_for_change(pump)
                if pump.done():
                    pump.result()
                    if not self._stop_event.is_set():
                        raise WatchError(f"watch on {self.watch_path} ended unexpectedly")
                if self._stop_event.is_set():
                    break
                if await self._sleep(self.debounce_seconds):
                    break
                self._pending_change.clear()
                try:
                    await self.dispatch(ScheduleTrigger.FILE_CHANGE)
                except Exception:
                    logger.exception("Unhandled error in file-change update")
        finally:
            if not pump.done():
                pump.cancel()
            try:
                await pump
            except (asyncio.CancelledError, WatchError):
                pass

    async def _pump_notifications(self) -> None:
        logger.debug("Setting up file watcher for %s", self.watch_path)
        try:
            async for _changes in self._watch_source(self.watch_path, self._stop_event):
                self.raw_notifications += 1
                self._pending_change.set()
        except WatchError:
            raise
        except Exception as exc:
            raise WatchError(f"file watcher for {self.watch_path} failed: {exc}") from exc

    async def _wait_for_change(self, pump: asyncio.Task) -> None:
        waiters = {
            asyncio.create_task(self._pending_change.wait()),
            asyncio.create_task(self._stop_event.wait()),
        }
        try:
            await asyncio.wait(waiters | {pump}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

    async def _sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; True when the stop event fired first."""

        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(seconds, 0.0))
            return True
        except asyncio.TimeoutError:
            return False
