"""Wire the connection, publishers and scheduler into one long-running daemon."""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Awaitable, Optional

from bin_agent.config import Settings
from bin_agent.errors import AgentError, PublishError
from bin_agent.services.connection import MqttConnection
from bin_agent.services.discovery import DiscoveryPublisher
from bin_agent.services.publisher import SerialPublisher
from bin_agent.services.scheduler import UpdateScheduler, WatchSource, watchfiles_source
from bin_agent.services.value_provider import BinValueProvider, ValueProvider
from bin_agent.status_server import StatusServer, create_status_app

logger = logging.getLogger(__name__)


class DaemonState(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    TERMINATED = "terminated"


class BinAgentDaemon:
    def __init__(
        self,
        settings: Settings,
        *,
        connection: Optional[MqttConnection] = None,
        provider: Optional[ValueProvider] = None,
        watch_source: WatchSource = watchfiles_source,
    ) -> None:
        self.settings = settings
        self.state = DaemonState.STARTING
        self.started_at = time.monotonic()
        self.connection = connection or MqttConnection(settings.broker_identity())
        self.provider = provider or BinValueProvider(
            settings.file_path,
            full_time=settings.full_time,
            unit=settings.measurement_unit,
        )
        self.publisher = SerialPublisher(self.connection)
        self.discovery = DiscoveryPublisher(self.publisher, settings.discovery_descriptor())
        self._stop_event = asyncio.Event()
        self.scheduler = UpdateScheduler(
            self.provider,
            self.publisher,
            self.discovery,
            state_topic=settings.state_topic,
            watch_path=settings.file_path,
            interval_seconds=settings.update_interval_seconds,
            debounce_seconds=settings.debounce_seconds,
            watch_source=watch_source,
            stop_event=self._stop_event,
        )
        self.status_server: Optional[StatusServer] = None

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Stop requested; shutting down")
        self._stop_event.set()

    async def run(self) -> None:
        """Connect, announce, then serve both trigger loops until stopped.

        Startup errors (``ConnectError``, ``CertificateError``) and a failing
        file watcher (``WatchError``) propagate to the caller.
        """

        try:
            if not await self._unless_stopped(self.connection.connect_with_backoff()):
                self.state = DaemonState.STOPPED
                return
            self._start_status_server()
            self.publisher.start()
            try:
                await self.discovery.send()
            except PublishError as exc:
                logger.warning("Failed to send discovery config: %s", exc)
            self.state = DaemonState.RUNNING
            logger.info(
                "Publishing %s to %s every %ss and on changes",
                self.settings.file_path,
                self.settings.state_topic,
                self.settings.update_interval_seconds,
            )
            await self.scheduler.run()
        except AgentError:
            self.state = DaemonState.TERMINATED
            raise
        else:
            self.state = DaemonState.STOPPED
        finally:
            await self.publisher.stop()
            await self.connection.close()
            if self.status_server is not None:
                await self.status_server.stop()
                self.status_server = None

    def _start_status_server(self) -> None:
        if not self.settings.status_enabled:
            return
        app = create_status_app(
            self.settings.service_version,
            started_at=self.started_at,
            connection=self.connection,
        )
        self.status_server = StatusServer(app, self.settings.status_address, self.settings.status_port)
        self.status_server.start()

    async def _unless_stopped(self, awaitable: Awaitable[None]) -> bool:
        """Await ``awaitable`` unless a stop arrives first; False when it was abandoned."""

        work = asyncio.ensure_future(awaitable)
        stopper = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
        if work.cancelled():
            return False
        work.result()
        return True
