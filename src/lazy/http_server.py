"""Public HTTP surface of lazy.

Routes are built once from the engine manager's snapshot when the app is
created; aiohttp freezes the router on startup, so changing the set of
engines means restarting lazy (manager and dispatcher together).

    GET  /version                 service and API versions
    GET  /engines                 {name: {url, meta}}
    GET  /health                  manager state
    POST /file                    analyze one file across engines
    *    /engine/<name>[/...]     reverse proxy to the engine, prefix stripped
    *    /...                     reverse proxy to the UI engine, if configured
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp
from aiohttp import web

from lazy import __version__
from lazy.engine import Engine
from lazy.logger import logger
from lazy.pipeline import AnalysisPipeline, EnginePipeline
from lazy.proxy import make_proxy_handler

API_VERSION = "v20161217"

# Spaces around the rule ids keep users from disabling them via rule config
NO_ENGINE_RULE_ID = " lazy-no-linters-defined "
NO_WARNINGS_RULE_ID = " lazy-no-linter-warnings "


class EngineSource(Protocol):
    """What the dispatcher reads from the engine manager."""

    @property
    def engines(self) -> Any: ...

    @property
    def ui_engine(self) -> Engine | None: ...

    @property
    def is_running(self) -> bool: ...

    @property
    def phase(self) -> Any: ...


@dataclass
class _DispatcherState:
    """Per-app state, stored under one app key at construction time.

    The HTTP session and default pipeline are filled in on startup, after
    the app dict is frozen.
    """

    manager: EngineSource
    pipeline: AnalysisPipeline | None = None
    http_session: aiohttp.ClientSession | None = None


_STATE_KEY: web.AppKey[_DispatcherState] = web.AppKey("dispatcher_state", t=_DispatcherState)


def _session(request: web.Request) -> aiohttp.ClientSession:
    session = request.app[_STATE_KEY].http_session
    assert session is not None
    return session


# ------------------------------------------------------------------
# Analysis result post-processing
# ------------------------------------------------------------------


def apply_engine_coverage(
    output: dict[str, Any],
    statuses: list[dict[str, Any]],
    language: str,
    host_path: str | None,
) -> dict[str, Any]:
    """Ensure ``warnings`` exists and flag files no engine actually checked.

    When nothing checked the file, the "no warnings" marker some engines
    emit would claim the file is clean, so it is dropped.

    Raises ``ValueError`` when *output* is not an object or its warnings
    are not a list of objects.
    """
    if not isinstance(output, dict):
        raise ValueError(f"analysis result must be an object, got {type(output).__name__}")
    if output.get("warnings") is None:
        output["warnings"] = []
    warnings = output["warnings"]
    if not isinstance(warnings, list) or not all(isinstance(w, dict) for w in warnings):
        raise ValueError("analysis warnings must be a list of objects")

    if not any(status.get("codeChecked") is True for status in statuses):
        output["warnings"] = [
            w for w in output["warnings"] if w.get("ruleId") != NO_WARNINGS_RULE_ID
        ]
        output["warnings"].append(
            {
                "type": "Info",
                "ruleId": NO_ENGINE_RULE_ID,
                "message": (
                    f"No engine registered for [{language}]. This file has not been "
                    "checked for language-specific warnings."
                ),
                "filePath": host_path,
            }
        )
    return output


# ------------------------------------------------------------------
# Handlers
# ------------------------------------------------------------------


async def _handle_version(request: web.Request) -> web.Response:
    return web.json_response({"service": __version__, "api": API_VERSION})


async def _handle_engines(request: web.Request) -> web.Response:
    manager = request.app[_STATE_KEY].manager
    return web.json_response(
        {name: {"url": engine.url, "meta": engine.meta} for name, engine in manager.engines.items()}
    )


async def _handle_health(request: web.Request) -> web.Response:
    manager = request.app[_STATE_KEY].manager
    phase = manager.phase
    return web.json_response(
        {
            "status": "ok",
            "running": manager.is_running,
            "phase": getattr(phase, "value", str(phase)),
        }
    )


async def _handle_file(request: web.Request) -> web.Response:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return web.json_response({"error": "request body must be JSON"}, status=400)
    if not isinstance(body, dict):
        return web.json_response({"error": "request body must be an object"}, status=400)

    language = body.get("language")
    if not language or not isinstance(language, str):
        return web.json_response({"error": "language is required"}, status=400)

    host_path = body.get("hostPath")
    state = request.app[_STATE_KEY]
    assert state.pipeline is not None

    statuses: list[dict[str, Any]] = []
    try:
        output = await state.pipeline.analyze_file(
            host_path, language, body.get("content"), body.get("context"), statuses
        )
        result = apply_engine_coverage(output or {}, statuses, language, host_path)
    except Exception as exc:
        logger.error("Exception during file analysis", language=language, err=str(exc))
        return web.json_response({"error": str(exc)}, status=500)

    return web.json_response(result)


# ------------------------------------------------------------------
# App setup
# ------------------------------------------------------------------


async def _start_http_session(app: web.Application) -> None:
    state = app[_STATE_KEY]
    state.http_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
    if state.pipeline is None:
        state.pipeline = EnginePipeline(state.manager.engines, state.http_session)


async def _cleanup_http_session(app: web.Application) -> None:
    state = app[_STATE_KEY]
    if state.http_session:
        await state.http_session.close()
        state.http_session = None


def create_app(
    manager: EngineSource,
    *,
    pipeline: AnalysisPipeline | None = None,
) -> web.Application:
    """Build the dispatcher for the engines *manager* currently holds."""
    app = web.Application()
    app[_STATE_KEY] = _DispatcherState(manager=manager, pipeline=pipeline)
    app.on_startup.append(_start_http_session)
    app.on_cleanup.append(_cleanup_http_session)

    app.router.add_get("/version", _handle_version)
    app.router.add_get("/engines", _handle_engines)
    app.router.add_get("/health", _handle_health)
    app.router.add_post("/file", _handle_file)

    for name, engine in manager.engines.items():
        if engine.is_ui:
            continue
        prefix = f"/engine/{name}"
        handler = make_proxy_handler(engine.url, _session, strip_prefix=prefix, name=name)
        app.router.add_route("*", prefix, handler)
        app.router.add_route("*", prefix + "/{tail:.*}", handler)
        logger.debug("Engine route added", engine=name, path=prefix, target=engine.url)

    # Catch-all goes last so every explicit route above wins
    ui_engine = manager.ui_engine
    if ui_engine is not None:
        handler = make_proxy_handler(ui_engine.url, _session, name=ui_engine.name)
        app.router.add_route("*", "/{tail:.*}", handler)
        logger.debug("UI route added", target=ui_engine.url)

    return app


async def start_http_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Start serving *app* and return the runner (call ``cleanup()`` to stop)."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("HTTP server listening", host=host, port=port)
    return runner
