"""Main orchestrator: wires settings, docker, engine manager and HTTP server."""

from __future__ import annotations

import asyncio
import signal

from aiohttp import web

from lazy.config import Settings, get_settings
from lazy.docker import DockerClient, RuntimeClient, docker_available
from lazy.engine_manager import EngineManager
from lazy.http_server import create_app, start_http_server
from lazy.logger import logger, set_level


class LazyApp:
    """Owns the process lifecycle: start engines, serve, stop on signal."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: RuntimeClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client or DockerClient()
        self.manager = EngineManager(self.settings, self.client)
        self._http_runner: web.AppRunner | None = None
        self._stopped = asyncio.Event()
        self._shutting_down = False

    async def _shutdown(self, sig_name: str) -> None:
        """Graceful shutdown handler. Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            import os

            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        try:
            if self._http_runner:
                await self._http_runner.cleanup()
                self._http_runner = None
            await self.manager.stop()
        finally:
            self._stopped.set()

    async def run(self) -> None:
        """Main entry point: startup sequence.

        Startup failures propagate so the process exits non-zero and the
        supervisor restarts it; the next start cleans up after this one.
        """
        set_level(self.settings.logging.level)
        if isinstance(self.client, DockerClient) and not docker_available():
            raise RuntimeError("Docker is required but the docker CLI is not on PATH")

        await self.manager.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self._shutdown(s.name)),
            )

        app = create_app(self.manager)
        self._http_runner = await start_http_server(
            app, self.settings.server.host, self.settings.server.port
        )
        await self._stopped.wait()
