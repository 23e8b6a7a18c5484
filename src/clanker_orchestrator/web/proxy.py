"""Reverse proxy from ``/{project}/{task_id}/...`` to the task's backend."""

import logging
from collections.abc import Callable
from pathlib import Path
from urllib.parse import parse_qsl, urlencode

import httpx
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import StreamingResponse

from clanker_orchestrator.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({"host", "connection", "transfer-encoding"})
BODYLESS_METHODS = frozenset({"GET", "HEAD"})
UPSTREAM_HOST = "127.0.0.1"

Resolver = Callable[[str, int], tuple[int, Path]]


def strip_route_prefix(raw_path: str) -> str:
    """Drop the leading ``{project}/{task_id}`` segments from a request path."""
    segments = [s for s in raw_path.split("/") if s]
    return "/".join(segments[2:])


def build_upstream_url(port: int, path: str, query: str, directory: str | Path) -> str:
    """Target URL on the backend, with the task's worktree as ``directory``."""
    params = [(k, v) for k, v in parse_qsl(query, keep_blank_values=True) if k != "directory"]
    params.append(("directory", str(directory)))
    return f"http://{UPSTREAM_HOST}:{port}/{path.lstrip('/')}?{urlencode(params)}"


def forward_headers(request: Request) -> list[tuple[str, str]]:
    headers = [
        (key, value)
        for key, value in request.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS and not key.lower().startswith("x-forwarded-")
    ]
    if request.method in BODYLESS_METHODS:
        # The body is not forwarded, so neither is its length.
        headers = [(k, v) for k, v in headers if k.lower() != "content-length"]

    client_host = request.client.host if request.client else None
    headers.append(("X-Forwarded-For", request.headers.get("x-forwarded-for") or client_host or "127.0.0.1"))
    headers.append(("X-Forwarded-Host", request.headers.get("host", "localhost")))
    headers.append(("X-Forwarded-Proto", request.url.scheme))
    return headers


class ProxyRouter:
    """Forwards one request to a task backend per call, without retries.

    ``resolve`` maps ``(project, task_id)`` to the backend port and worktree
    path and raises ``UpstreamUnavailable`` when the task has no live backend.
    """

    def __init__(self, resolve: Resolver, client: httpx.AsyncClient | None = None):
        self._resolve = resolve
        self._client = client or httpx.AsyncClient(timeout=None)

    async def route(self, project: str, task_id: int, request: Request) -> StreamingResponse:
        port, directory = self._resolve(project, task_id)

        raw_path = request.scope.get("raw_path") or request.url.path.encode()
        path = strip_route_prefix(raw_path.decode("latin-1"))
        url = build_upstream_url(port, path, request.url.query, directory)
        body = None if request.method in BODYLESS_METHODS else await request.body()

        upstream_request = self._client.build_request(
            request.method,
            url,
            headers=forward_headers(request),
            content=body,
        )
        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            logger.warning("Proxy error for %s/%d: %s", project, task_id, e)
            raise UpstreamUnavailable(f"Upstream server not available: {e}") from e

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = [(k.lower(), v) for k, v in upstream.headers.raw]
        return response

    async def aclose(self):
        await self._client.aclose()
