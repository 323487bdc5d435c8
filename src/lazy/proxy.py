"""Reverse proxy handlers for engine traffic.

Plain HTTP requests are streamed through in both directions. Requests
asking for a websocket upgrade are bridged: lazy opens a websocket to the
engine first, then accepts the client's upgrade with the same subprotocol
and pumps frames both ways until either side closes.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import aiohttp
from aiohttp import web

from lazy.logger import logger

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
SessionGetter = Callable[[web.Request], aiohttp.ClientSession]

# Hop-by-hop headers (RFC 7230 §6.1) plus the ones aiohttp recomputes
_STRIP_REQUEST_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

# The client session decompresses bodies, so the encoding header must go too
_STRIP_RESPONSE_HEADERS = frozenset(
    {
        "transfer-encoding",
        "content-encoding",
        "content-length",
        "connection",
        "keep-alive",
    }
)

_WS_HANDSHAKE_HEADERS = frozenset(
    {
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
        "sec-websocket-accept",
    }
)


def is_websocket_upgrade(request: web.Request) -> bool:
    connection = request.headers.get("Connection", "").lower()
    return (
        request.headers.get("Upgrade", "").lower() == "websocket" and "upgrade" in connection
    )


def upstream_path(path: str, strip_prefix: str) -> str:
    """Remove *strip_prefix* from *path*, keeping a leading slash."""
    if strip_prefix and path.startswith(strip_prefix):
        path = path[len(strip_prefix) :]
    if not path.startswith("/"):
        path = "/" + path
    return path


def _forward_headers(request: web.Request, *, websocket: bool = False) -> dict[str, str]:
    headers: dict[str, str] = {}
    for key, value in request.headers.items():
        lower = key.lower()
        if lower in _STRIP_REQUEST_HEADERS:
            continue
        if websocket and lower in _WS_HANDSHAKE_HEADERS:
            continue
        headers[key] = value
    if request.remote:
        forwarded = request.headers.get("X-Forwarded-For")
        headers["X-Forwarded-For"] = f"{forwarded}, {request.remote}" if forwarded else request.remote
    headers.setdefault("X-Forwarded-Host", request.host)
    headers.setdefault("X-Forwarded-Proto", request.scheme)
    return headers


def make_proxy_handler(
    target_url: str,
    get_session: SessionGetter,
    *,
    strip_prefix: str = "",
    name: str = "",
) -> Handler:
    """Build a handler forwarding everything it receives to *target_url*."""
    base = target_url.rstrip("/")

    async def handler(request: web.Request) -> web.StreamResponse:
        path = upstream_path(request.rel_url.path, strip_prefix)
        query = request.rel_url.query_string
        url = f"{base}{path}" + (f"?{query}" if query else "")
        session = get_session(request)

        if is_websocket_upgrade(request):
            return await _proxy_websocket(request, session, url, name=name)
        return await _proxy_http(request, session, url, name=name)

    return handler


async def _proxy_http(
    request: web.Request, session: aiohttp.ClientSession, url: str, *, name: str
) -> web.StreamResponse:
    body = await request.read()
    response: web.StreamResponse | None = None
    try:
        async with session.request(
            method=request.method,
            url=url,
            headers=_forward_headers(request),
            data=body or None,
            allow_redirects=False,
        ) as upstream:
            resp_headers: dict[str, str] = {}
            for key, value in upstream.headers.items():
                if key.lower() not in _STRIP_RESPONSE_HEADERS:
                    resp_headers[key] = value

            response = web.StreamResponse(
                status=upstream.status,
                reason=upstream.reason,
                headers=resp_headers,
            )
            await response.prepare(request)

            async for chunk in upstream.content.iter_any():
                await response.write(chunk)

            await response.write_eof()
            return response
    except aiohttp.ClientError as exc:
        logger.error("Engine upstream error", engine=name, url=url, err=str(exc))
        if response is not None and response.prepared:
            # Headers are already out; dropping the connection marks the body truncated
            raise
        return web.json_response(
            {"error": f"Engine {name or url} unavailable: {type(exc).__name__}"}, status=502
        )


async def _pump(
    source: web.WebSocketResponse | aiohttp.ClientWebSocketResponse,
    sink: web.WebSocketResponse | aiohttp.ClientWebSocketResponse,
) -> None:
    async for msg in source:
        if msg.type == aiohttp.WSMsgType.TEXT:
            await sink.send_str(msg.data)
        elif msg.type == aiohttp.WSMsgType.BINARY:
            await sink.send_bytes(msg.data)
        elif msg.type == aiohttp.WSMsgType.ERROR:
            break


async def _proxy_websocket(
    request: web.Request, session: aiohttp.ClientSession, url: str, *, name: str
) -> web.StreamResponse:
    ws_url = "ws" + url[len("http") :] if url.startswith("http") else url
    protocols = tuple(
        p.strip()
        for p in request.headers.get("Sec-WebSocket-Protocol", "").split(",")
        if p.strip()
    )

    try:
        upstream = await session.ws_connect(
            ws_url,
            headers=_forward_headers(request, websocket=True),
            protocols=protocols,
        )
    except aiohttp.ClientError as exc:
        logger.error("Engine websocket upstream error", engine=name, url=ws_url, err=str(exc))
        return web.json_response(
            {"error": f"Engine {name or url} unavailable: {type(exc).__name__}"}, status=502
        )

    client = web.WebSocketResponse(
        protocols=(upstream.protocol,) if upstream.protocol else ()
    )
    try:
        await client.prepare(request)
        tasks = [
            asyncio.create_task(_pump(client, upstream)),
            asyncio.create_task(_pump(upstream, client)),
        ]
        _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    finally:
        await upstream.close()
        await client.close()
    return client
