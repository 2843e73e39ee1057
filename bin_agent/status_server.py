"""HTTP status reporter, served in-process next to the publish pipeline."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Iterator, Optional

import uvicorn
from fastapi import FastAPI

from bin_agent.observability import configure_observability
from bin_agent.routers import root as root_router
from bin_agent.routers import status as status_router

logger = logging.getLogger(__name__)


def create_status_app(
    version: str,
    *,
    started_at: Optional[float] = None,
    connection: Any = None,
) -> FastAPI:
    app = FastAPI(title="Bin Agent", version=version, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.version = version
    app.state.started_at = started_at if started_at is not None else time.monotonic()
    app.state.connection = connection
    configure_observability(app)
    app.include_router(root_router.router)
    app.include_router(status_router.router)
    return app


class _EmbeddedServer(uvicorn.Server):
    """Leaves signal handling to the daemon that embeds it."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class StatusServer:
    """Runs the status app on its own uvicorn server task."""

    def __init__(self, app: FastAPI, host: str, port: int) -> None:
        self.app = app
        self.host = host
        self.port = port
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._serve(), name="status-server")
        logger.debug("Starting status server on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        task, self._task = self._task, None
        if task:
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except asyncio.TimeoutError:
                task.cancel()
                logger.warning("Status server did not stop in time; cancelled")
            except asyncio.CancelledError:
                pass
        self._server = None

    async def _serve(self) -> None:
        assert self._server is not None
        try:
            await self._server.serve()
        except (OSError, SystemExit) as exc:
            # uvicorn exits the process on bind failures; keep the publisher running.
            logger.error("Status server on %s:%s stopped: %r", self.host, self.port, exc)
