"""Local HTTP proxy in front of the Factory API.

The droid sends every API call to ``FACTORY_API_BASE_URL``. Pointing that at
this proxy lets web-search calls (``POST /api/tools/exa/search*``) go to a
custom endpoint while everything else reaches the real upstream.

Routes:
- GET /health - upstream, forward target and request counters
- /{path} - forwarded to the upstream (or the forward URL for web search)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
import uvicorn
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect, Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
WEBSEARCH_PATH_PREFIX = "/api/tools/exa/search"
MAX_WEBSEARCH_BODY_BYTES = 1_000_000

_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
_DROPPED_REQUEST_HEADERS = frozenset({"host", "accept-encoding", "content-length"})
_DROPPED_RESPONSE_HEADERS = frozenset(
    {"content-encoding", "content-length", "transfer-encoding", "connection"}
)


def parse_http_url(value: str, name: str) -> httpx.URL:
    """Parse an http(s) URL.

    Raises:
        ValueError: ``value`` is not an absolute http(s) URL.
    """
    try:
        url = httpx.URL(value)
    except httpx.InvalidURL as e:
        raise ValueError(f"{name} must be a valid URL: {value}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ValueError(f"{name} must be http(s): {value}")
    return url


def origin(url: httpx.URL) -> str:
    return f"{url.scheme}://{url.netloc.decode('ascii')}"


def resolve_forward_target(forward: httpx.URL, path: str, query: str) -> str:
    """Target of a forwarded web-search request.

    A forward URL without a path is a base URL and keeps the request path;
    otherwise it is used as is, taking the request query when it has none.
    """
    suffix = f"{path}?{query}" if query else path
    if forward.path in ("", "/") and not forward.query:
        return origin(forward) + suffix
    if not forward.query and query:
        return f"{forward}?{query}"
    return str(forward)


@dataclass
class ProxyStats:
    total: int = 0
    websearch: int = 0
    last_websearch_at: str | None = None
    last_websearch_outcome: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "websearch": self.websearch,
            "lastWebsearchAt": self.last_websearch_at,
            "lastWebsearchOutcome": self.last_websearch_outcome,
        }


class WebsearchProxy:
    """Starlette proxy served by uvicorn on a local port.

    Usage:
        proxy = WebsearchProxy(upstream_url="https://api.factory.ai")
        await proxy.start()
        env["FACTORY_API_BASE_URL"] = proxy.base_url
        ...
        await proxy.stop()
    """

    def __init__(
        self,
        upstream_url: str,
        forward_url: str | None = None,
        host: str = DEFAULT_HOST,
        port: int = 0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.upstream = parse_http_url(upstream_url, "DROID_ACP_WEBSEARCH_UPSTREAM_URL")
        self.forward = (
            parse_http_url(forward_url, "DROID_ACP_WEBSEARCH_FORWARD_URL") if forward_url else None
        )
        self.host = host
        self.port = port
        self.stats = ProxyStats()
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, read=None),
            follow_redirects=False,
        )
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self.app = self._create_app()

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def _create_app(self) -> Starlette:
        routes = [
            Route("/health", self._health, methods=["GET"]),
            Route("/{path:path}", self._proxy, methods=_ALL_METHODS),
        ]
        return Starlette(routes=routes)

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Bind and serve in the background; ``port`` is the bound port afterwards."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        server = uvicorn.Server(config)
        self._server = server
        self._serve_task = asyncio.create_task(server.serve(), name="websearch-proxy")

        while not server.started:
            if self._serve_task.done():
                self._serve_task.result()
                raise RuntimeError("Web-search proxy stopped during startup")
            await asyncio.sleep(0.01)

        sockets = [s for srv in server.servers for s in srv.sockets]
        if sockets:
            self.port = sockets[0].getsockname()[1]
        logger.info(f"[websearch] proxy listening on {self.base_url}")

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            await asyncio.gather(self._serve_task, return_exceptions=True)
        self._server = None
        self._serve_task = None
        await self._client.aclose()

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _health(self, request: Request) -> JSONResponse:
        self.stats.total += 1
        return JSONResponse(
            {
                "status": "ok",
                "upstreamBaseUrl": str(self.upstream),
                "websearchForwardUrl": str(self.forward) if self.forward else None,
                "requests": self.stats.to_dict(),
            }
        )

    async def _proxy(self, request: Request) -> Response:
        self.stats.total += 1
        path = request.url.path
        query = request.url.query
        is_websearch = request.method == "POST" and path.startswith(WEBSEARCH_PATH_PREFIX)

        if is_websearch and self.forward is not None:
            target = resolve_forward_target(self.forward, path, query)
        else:
            target = origin(self.upstream) + (f"{path}?{query}" if query else path)

        headers = [
            (k, v) for k, v in request.headers.items() if k.lower() not in _DROPPED_REQUEST_HEADERS
        ]
        headers.append(("accept-encoding", "identity"))

        content: bytes | AsyncIterator[bytes] | None = None
        if is_websearch:
            self.stats.websearch += 1
            self.stats.last_websearch_at = datetime.now(UTC).isoformat()
            try:
                body = await request.body()
            except ClientDisconnect:
                return Response(status_code=499)
            if len(body) > MAX_WEBSEARCH_BODY_BYTES:
                self.stats.last_websearch_outcome = "rejected: body too large"
                return JSONResponse({"error": "Request body too large"}, status_code=413)
            content = body
            self.stats.last_websearch_outcome = (
                "proxied: forward" if self.forward is not None else "proxied: upstream"
            )
            logger.info(f"[websearch] proxying {path} -> {target}")
        else:
            logger.debug(f"[factory-proxy] {request.method} {path}")
            if request.method not in ("GET", "HEAD"):
                content = request.stream()

        upstream_request = self._client.build_request(
            request.method, target, headers=headers, content=content
        )
        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            logger.warning(f"Upstream request to {target} failed: {e}")
            if is_websearch:
                self.stats.last_websearch_outcome = f"error: {e}"
            return JSONResponse(
                {"error": "Upstream request failed", "message": str(e)}, status_code=502
            )

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers.extend(
            (k.encode("latin-1"), v.encode("latin-1"))
            for k, v in upstream.headers.multi_items()
            if k.lower() not in _DROPPED_RESPONSE_HEADERS
        )
        return response


__all__ = [
    "ProxyStats",
    "WebsearchProxy",
    "parse_http_url",
    "resolve_forward_target",
]
