"""MCP server a running clanker uses to report progress to the orchestrator."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from mcp.server.fastmcp import Context, FastMCP

from clanker_orchestrator.config import Config, get_config
from clanker_orchestrator.db.models import STATUSES


@dataclass
class AppContext:
    http: httpx.Client
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open an HTTP client against the orchestrator API, close it on shutdown."""
    config = get_config()
    http = httpx.Client(base_url=config.api_url, timeout=10.0)
    try:
        yield AppContext(http=http, config=config)
    finally:
        http.close()


mcp = FastMCP("clanker-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _target(project: str | None, task_id: int | None) -> tuple[str | None, int | None]:
    """Fill in the project and task this agent was started for."""
    if not project:
        project = os.environ.get("CLANKER_PROJECT")
    if task_id is None and (env_id := os.environ.get("CLANKER_TASK_ID")):
        task_id = int(env_id)
    return project, task_id


def _put(ctx: Context, project: str | None, task_id: int | None, patch: dict) -> dict:
    project, task_id = _target(project, task_id)
    if not project or task_id is None:
        return {"error": "project and task_id are required (or set CLANKER_PROJECT and CLANKER_TASK_ID)"}

    try:
        response = _ctx(ctx).http.put(f"/projects/{project}/tasks/{task_id}", json=patch)
    except httpx.HTTPError as e:
        return {"error": f"Orchestrator unreachable: {e}"}
    return _result(response)


def _result(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        data = {"error": response.text}
    if response.is_error and "error" not in data:
        data = {"error": f"HTTP {response.status_code}"}
    return data


# ── Tools ─────────────────────────────────────────────────────────────────────


@mcp.tool()
def list_tasks(ctx: Context, project: str | None = None) -> dict:
    """List all clankers of a project with their status, cost and context usage."""
    project, _ = _target(project, None)
    if not project:
        return {"error": "project is required (or set CLANKER_PROJECT)"}
    try:
        response = _ctx(ctx).http.get(f"/projects/{project}/tasks")
    except httpx.HTTPError as e:
        return {"error": f"Orchestrator unreachable: {e}"}
    return _result(response)


@mcp.tool()
def update_task_status(
    ctx: Context,
    status: str,
    project: str | None = None,
    task_id: int | None = None,
) -> dict:
    """Update a clanker's status. Valid statuses: not_started, running, waiting, done, failed, merged.

    Moving to done, failed or merged stops the clanker's backend.
    """
    if status not in STATUSES:
        return {"error": f"Invalid status: {status}. Valid: {', '.join(STATUSES)}"}
    return _put(ctx, project, task_id, {"status": status})


@mcp.tool()
def append_task_logs(
    ctx: Context,
    lines: list[str],
    project: str | None = None,
    task_id: int | None = None,
) -> dict:
    """Append lines to a clanker's log shown in the dashboard."""
    return _put(ctx, project, task_id, {"logs": lines})


@mcp.tool()
def report_usage(
    ctx: Context,
    cost: float | None = None,
    context_usage: float | None = None,
    project: str | None = None,
    task_id: int | None = None,
) -> dict:
    """Report accumulated cost in dollars and context window usage in percent."""
    patch = {}
    if cost is not None:
        patch["cost"] = cost
    if context_usage is not None:
        patch["contextusage"] = context_usage
    if not patch:
        return {"error": "Nothing to report: pass cost and/or context_usage"}
    return _put(ctx, project, task_id, patch)


@mcp.tool()
def set_pr_number(
    ctx: Context,
    pr_number: int,
    project: str | None = None,
    task_id: int | None = None,
) -> dict:
    """Record the pull request opened for a clanker's branch."""
    return _put(ctx, project, task_id, {"pr_number": pr_number})
