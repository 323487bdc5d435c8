"""File analysis fan-out across engines.

:class:`EnginePipeline` forwards a ``/file`` request to every engine that
handles the file's language and merges their warnings into one response.
Each consulted engine also appends a status record to the caller-supplied
``statuses`` list, which ``POST /file`` uses to tell whether the file was
checked at all.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from lazy.engine import Engine
from lazy.logger import logger


class PipelineError(Exception):
    """An engine failed while analyzing a file."""


class AnalysisPipeline(Protocol):
    async def analyze_file(
        self,
        host_path: str | None,
        language: str,
        content: str | None,
        context: Any,
        statuses: list[dict[str, Any]],
    ) -> dict[str, Any]: ...


def _engine_warnings(engine: Engine, output: dict[str, Any]) -> list[dict[str, Any]]:
    warnings = output.get("warnings")
    if warnings is None:
        return []
    if not isinstance(warnings, list) or not all(isinstance(w, dict) for w in warnings):
        raise PipelineError(f"engine {engine.name} returned malformed warnings")
    return warnings


class EnginePipeline:
    """Default pipeline: concurrent ``POST <engine>/file`` to capable engines."""

    def __init__(self, engines: Mapping[str, Engine], session: aiohttp.ClientSession) -> None:
        self._engines = engines
        self._session = session

    async def analyze_file(
        self,
        host_path: str | None,
        language: str,
        content: str | None,
        context: Any,
        statuses: list[dict[str, Any]],
    ) -> dict[str, Any]:
        body = {
            "hostPath": host_path,
            "language": language,
            "content": content,
            "context": context,
        }
        engines = [e for e in self._engines.values() if e.handles_language(language)]
        outputs = await asyncio.gather(*(self._analyze(e, body) for e in engines))

        warnings: list[dict[str, Any]] = []
        for engine, output in zip(engines, outputs, strict=True):
            statuses.append(
                {
                    "engine": engine.name,
                    "codeChecked": bool(output.get("codeChecked", output.get("checkedCode", True))),
                }
            )
            warnings.extend(_engine_warnings(engine, output))
        return {"warnings": warnings}

    async def _analyze(self, engine: Engine, body: dict[str, Any]) -> dict[str, Any]:
        try:
            async with self._session.post(f"{engine.url}/file", json=body) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise PipelineError(f"engine {engine.name} returned {resp.status}: {text[:200]}")
                output = await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            logger.warning("Engine unreachable during analysis", engine=engine.name, err=str(exc))
            raise PipelineError(f"engine {engine.name} unreachable: {exc}") from exc
        if not isinstance(output, dict):
            raise PipelineError(f"engine {engine.name} returned a non-object response")
        return output
