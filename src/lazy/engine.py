"""Engine entity: one installed, started engine container."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import aiohttp

from lazy.config import EngineConfig
from lazy.logger import logger


class Engine:
    """A running engine, reachable by name on the lazy network.

    Created by :class:`~lazy.engine_manager.EngineManager` only after its
    container has been created and started; :meth:`start` is the engine's
    own readiness hook.
    """

    def __init__(
        self,
        name: str,
        container_id: str,
        container_name: str,
        config: EngineConfig,
        *,
        is_ui: bool = False,
    ) -> None:
        self.name = name
        self.container_id = container_id
        self.container_name = container_name
        self.config = config
        self.is_ui = is_ui

    @property
    def url(self) -> str:
        return f"http://{self.container_name}:{self.config.port}"

    @property
    def meta(self) -> dict[str, Any]:
        return dict(self.config.meta)

    def handles_language(self, language: str) -> bool:
        if not self.config.languages:
            return True
        return language.lower() in (lang.lower() for lang in self.config.languages)

    async def start(self, *, poll_interval: float = 1.0) -> None:
        """Block until the engine answers its health check.

        Engines without ``healthcheck_path`` are considered ready as soon as
        their container runs. There is no deadline; a supervisor bounds
        overall startup time.
        """
        if not self.config.healthcheck_path:
            return

        health_url = f"{self.url}/{self.config.healthcheck_path.lstrip('/')}"
        start = time.monotonic()
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=5)) as session:
            while True:
                try:
                    async with session.get(health_url) as resp:
                        if resp.status < 500:
                            logger.info(
                                "Engine health check passed",
                                engine=self.name,
                                elapsed_ms=round((time.monotonic() - start) * 1000),
                            )
                            return
                except (aiohttp.ClientError, OSError, asyncio.TimeoutError):
                    pass
                await asyncio.sleep(poll_interval)

    def __repr__(self) -> str:
        return f"Engine(name={self.name!r}, url={self.url!r})"
