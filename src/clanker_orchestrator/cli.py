"""CLI entry point for the clanker orchestrator."""

import json
import logging
import sys

import click

from clanker_orchestrator.config import get_config
from clanker_orchestrator.db.storage import load_state
from clanker_orchestrator.errors import StateFileError

STATUS_ICONS = {
    "not_started": "○",
    "running": "●",
    "waiting": "◐",
    "done": "✓",
    "failed": "✗",
    "merged": "⇄",
}


def _load_projects():
    config = get_config()
    try:
        projects, _ = load_state(config.state_path)
    except StateFileError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    return projects


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
def main():
    """clanker - Clanker Orchestrator CLI"""
    pass


# ── Server Command ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default=None, help="Host to bind to (default: CLANKER_HOST)")
@click.option("--port", default=None, type=int, help="Port to listen on (default: CLANKER_PORT)")
def serve(host, port):
    """Run the orchestrator HTTP API."""
    from clanker_orchestrator.web.app import run_server

    config = get_config()
    if host:
        config.host = host
    if port:
        config.port = port
    _configure_logging(config.log_level)

    click.echo(f"Starting clanker orchestrator at http://{config.host}:{config.port}")
    run_server(config)


# ── State Commands ───────────────────────────────────────────────────────────


@main.command("projects")
def projects_list():
    """List projects recorded in the state file."""
    projects = _load_projects()
    if not projects:
        click.echo("No projects found.")
        return
    for project in projects.values():
        click.echo(f"  {project.name}: {project.upstream} ({len(project.tasks)} tasks)")


@main.command("tasks")
@click.argument("project")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def tasks_list(project, json_output):
    """List a project's tasks as recorded in the state file."""
    projects = _load_projects()
    if project not in projects:
        click.echo(f"Project not found: {project}", err=True)
        sys.exit(1)

    tasks = projects[project].tasks
    if json_output:
        click.echo(json.dumps([t.to_dict() for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    for task in tasks:
        icon = STATUS_ICONS.get(task.status, "?")
        pr = f" [PR #{task.pr_number}]" if task.pr_number else ""
        click.echo(f"  {icon} {task.id}: {task.title} ({task.status}) ${task.cost:.2f}{pr}")


# ── Autopush Command ─────────────────────────────────────────────────────────


@main.command("autopush")
@click.argument("worktree", type=click.Path(exists=True, file_okay=False))
@click.option("--branch", required=True, help="Branch to push to")
@click.option("--interval", default=30.0, type=float, help="Seconds between cycles")
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
def autopush(worktree, branch, interval, once):
    """Periodically commit and push a worktree's changes."""
    from clanker_orchestrator.core.autopush import Autopusher

    _configure_logging(get_config().log_level)
    pusher = Autopusher(worktree, branch, interval)
    if once:
        committed = pusher.run_cycle()
        click.echo("Pushed changes." if committed else "Nothing to push.")
        return

    pusher.install_signal_handlers()
    pusher.run_forever()


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from clanker_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
