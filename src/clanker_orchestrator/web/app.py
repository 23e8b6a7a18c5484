"""HTTP API for the clanker orchestrator."""

import json
import logging
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from clanker_orchestrator.config import Config, get_config
from clanker_orchestrator.core.orchestrator import Orchestrator
from clanker_orchestrator.errors import (
    InvalidRequest,
    NotFound,
    OrchestratorError,
    ProvisioningError,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]

_ERROR_STATUS = [
    (NotFound, 404),
    (InvalidRequest, 400),
    (ProvisioningError, 500),
    (UpstreamUnavailable, 502),
]


class CORSMiddleware(BaseHTTPMiddleware):
    """Answers every preflight with an empty 200 and stamps CORS headers on all responses."""

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _error_response(e: OrchestratorError) -> JSONResponse:
    for exc_type, status_code in _ERROR_STATUS:
        if isinstance(e, exc_type):
            return JSONResponse({"error": str(e)}, status_code=status_code)
    logger.exception("Unhandled orchestrator error")
    return JSONResponse({"error": str(e)}, status_code=500)


async def _json_body(request: Request, strict: bool = True) -> dict:
    """Parse the request body as a JSON object. An empty body is ``{}``."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        if not strict:
            return {}
        raise InvalidRequest(f"Request body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        if not strict:
            return {}
        raise InvalidRequest("Request body must be a JSON object")
    return data


def _task_id(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise InvalidRequest(f"Invalid task id: {value!r}") from None


# ── Handlers ──────────────────────────────────────────────────────────────────


async def ping(request: Request):
    return JSONResponse({"message": "pong"})


async def project_data(request: Request):
    name = request.path_params["project"]
    try:
        project = _orchestrator(request).get_project(name)
    except OrchestratorError as e:
        return _error_response(e)
    return JSONResponse({"data": project.to_dict(), "project": name})


async def open_project(request: Request):
    name = request.path_params["project"]
    try:
        body = await _json_body(request)
        upstream = body.get("upstream")
        if upstream is not None and not isinstance(upstream, str):
            raise InvalidRequest("upstream must be a string")
        project = await _orchestrator(request).open_project(name, upstream)
    except OrchestratorError as e:
        logger.warning("Opening project %s failed: %s", name, e)
        return _error_response(e)
    return JSONResponse({"success": True, "project": project.name})


async def create_clanker(request: Request):
    name = request.path_params["project"]
    try:
        body = await _json_body(request, strict=False)
        prompt = body.get("prompt")
        if prompt is not None and not isinstance(prompt, str):
            raise InvalidRequest("prompt must be a string")
        task_id, port = await _orchestrator(request).create_clanker(name, prompt or None)
    except OrchestratorError as e:
        logger.warning("Creating clanker for %s failed: %s", name, e)
        return _error_response(e)
    return JSONResponse({"taskId": task_id, "port": port})


async def list_tasks(request: Request):
    name = request.path_params["project"]
    try:
        tasks = _orchestrator(request).list_tasks(name)
    except OrchestratorError as e:
        return _error_response(e)
    return JSONResponse({"tasks": [t.to_dict() for t in tasks]})


async def update_task(request: Request):
    name = request.path_params["project"]
    try:
        task_id = _task_id(request.path_params["task_id"])
        patch = await _json_body(request)
        await _orchestrator(request).update_task(name, task_id, patch)
    except OrchestratorError as e:
        return _error_response(e)
    return JSONResponse({"success": True})


async def proxy(request: Request):
    name = request.path_params["project"]
    try:
        task_id = int(request.path_params["task_id"])
    except ValueError:
        return JSONResponse({"error": "Upstream server not available"}, status_code=502)

    try:
        return await _orchestrator(request).proxy.route(name, task_id, request)
    except UpstreamUnavailable as e:
        return JSONResponse({"error": str(e)}, status_code=502)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(config: Config | None = None, orchestrator: Orchestrator | None = None) -> Starlette:
    config = config or get_config()
    orchestrator = orchestrator or Orchestrator(config)

    @asynccontextmanager
    async def lifespan(app: Starlette):
        await orchestrator.init()
        try:
            yield
        finally:
            await orchestrator.shutdown()

    routes = [
        Route("/ping", ping),
        Route("/projects/{project}/data", project_data),
        Route("/projects/{project}/open", open_project, methods=["POST"]),
        Route("/projects/{project}/clankers", create_clanker, methods=["POST"]),
        Route("/projects/{project}/tasks", list_tasks),
        Route("/projects/{project}/tasks/{task_id}", update_task, methods=["PUT"]),
        # Catch-all proxy routes must stay last.
        Route("/{project}/{task_id}", proxy, methods=PROXY_METHODS),
        Route("/{project}/{task_id}/{path:path}", proxy, methods=PROXY_METHODS),
    ]
    app = Starlette(
        routes=routes,
        middleware=[Middleware(CORSMiddleware)],
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    return app


def run_server(config: Config | None = None):
    config = config or get_config()
    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
