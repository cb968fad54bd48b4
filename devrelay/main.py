"""devrelay CLI.

Commands:
    devrelay serve     — Run the inbound API (sessions, commands, previews)
    devrelay compute   — Run the compute worker on the heavy machine
    devrelay health    — API and compute worker status
    devrelay classify  — Show how a command would be routed
    devrelay run       — One-shot sandboxed run in a user's workspace
    devrelay trace     — Show the activity trace for a session or agent run
"""

from __future__ import annotations

import asyncio

import httpx
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from devrelay.config import settings
from devrelay.utils import setup_logging

# Initialize logging on import
setup_logging()

app = typer.Typer(
    name="devrelay",
    help="devrelay — remote command execution with sandboxing, heavy offload and dev-server previews",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()


# ── devrelay serve ────────────────────────────────────────────


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
):
    """🚀 Run the inbound API."""
    import uvicorn

    from devrelay.api.app import create_app

    setup_logging(service="api")
    uvicorn.run(create_app(), host=host, port=port, log_config=None)


# ── devrelay compute ──────────────────────────────────────────


@app.command()
def compute(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8080, "--port", "-p", help="Bind port"),
):
    """🏗  Run the compute worker (heavy commands and dev servers)."""
    import uvicorn

    from devrelay.compute.server import create_compute_app

    setup_logging(service="compute")
    uvicorn.run(create_compute_app(), host=host, port=port, log_config=None)


# ── devrelay health ───────────────────────────────────────────


@app.command()
def health(
    api_url: str = typer.Option(
        None, "--api", help="API base URL (defaults to PUBLIC_BASE_URL)"
    ),
):
    """🩺 API and compute worker status."""
    asyncio.run(_health(api_url or settings.public_base_url))


async def _health(api_url: str):
    targets = [("API", api_url)]
    if settings.heavy_backend_url:
        targets.append(("Compute worker", settings.heavy_backend_url))

    table = Table(show_header=True, box=None, padding=(0, 2))
    table.add_column("Service", style="cyan")
    table.add_column("URL", style="dim")
    table.add_column("Status", style="white")
    table.add_column("Details", style="white")

    async with httpx.AsyncClient(timeout=5.0) as client:
        for name, url in targets:
            try:
                response = await client.get(url.rstrip("/") + "/health")
                response.raise_for_status()
                body = response.json()
            except (httpx.HTTPError, ValueError) as e:
                table.add_row(name, url, "[red]⚠ unreachable[/]", str(e)[:60])
                continue
            details = ""
            if "sessions" in body:
                details = (
                    f"sessions={body['sessions'].get('total', 0)} "
                    f"previews={body.get('previews', {}).get('total', 0)}"
                )
            elif "devServers" in body:
                details = f"devServers={body['devServers']}"
            table.add_row(name, url, f"[green]✅ {body.get('status', 'ok')}[/]", details)

    if not settings.heavy_backend_url:
        table.add_row("Compute worker", "—", "[yellow]not configured[/]", "heavy commands run in the sandbox")
    console.print(Panel(table, title="[bold cyan]devrelay health[/]", border_style="cyan"))


# ── devrelay classify ─────────────────────────────────────────


@app.command()
def classify(
    command: str = typer.Argument(..., help="Command line to classify"),
    force_heavy: bool = typer.Option(False, "--heavy", help="Apply the force-heavy override"),
):
    """🧭 Show the routing decision and project requirement for a command."""
    from devrelay.routing.policy import classify as classify_command
    from devrelay.routing.policy import dev_server_intent, normalize_command, required_project

    normalized = normalize_command(command)
    decision = classify_command(normalized, force_heavy=force_heavy)
    requirement = required_project(normalized)
    intent = dev_server_intent(normalized)

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    route_color = "magenta" if decision.route == "heavy" else "green"
    table.add_row("Route", f"[{route_color}]{decision.route}[/]")
    table.add_row("Reason", decision.reason)
    table.add_row("Category", decision.category or "—")
    table.add_row("Matched", decision.matched or "—")
    if requirement:
        table.add_row("Requires", f"{requirement.project_type} ({', '.join(requirement.markers)})")
    if intent is not None:
        table.add_row("Dev server", f"start on port {intent or 'default'}")
    console.print(Panel(table, title=f"[bold]{normalized}[/]", border_style=route_color))


# ── devrelay run ──────────────────────────────────────────────


@app.command()
def run(
    command: str = typer.Argument(..., help="Command to run in the sandbox"),
    user_id: str = typer.Option("local", "--user", "-u", help="User whose workspace to use"),
):
    """▶ Run one command in the sandbox, streaming output."""
    code = asyncio.run(_run(command, user_id))
    raise typer.Exit(code)


async def _run(command: str, user_id: str) -> int:
    from devrelay.models.activity import ActivityLog
    from devrelay.sandbox.executor import SandboxExecutor
    from devrelay.sessions.manager import SessionManager
    from devrelay.workspace.store import WorkspaceStore

    workspaces = WorkspaceStore()
    sessions = SessionManager(workspaces, ActivityLog(persist=False))
    sandbox = SandboxExecutor(workspaces)
    session = await sessions.create_session(user_id)

    def echo(stream: str, text: str) -> None:
        console.out(text, end="", style="red" if stream == "stderr" else None, highlight=False)

    result = await sandbox.run(command, session, on_output=echo)
    if result.error and result.exit_code is None:
        console.print(f"[red]{result.error}[/]")
    elif result.timed_out:
        console.print(f"\n[red]{result.error}[/]")
    console.print(f"\n[dim]exit {result.exit_code} · {result.duration_ms:.0f}ms · {session.workspace_dir}[/]")
    return result.exit_code if result.exit_code is not None else 1


# ── devrelay trace ────────────────────────────────────────────


@app.command()
def trace(
    correlation_id: str = typer.Argument(..., help="Session id or agent run id"),
):
    """🔍 View the activity trace for a session or agent run."""
    from devrelay.models.activity import ActivityLog

    t = ActivityLog().get_trace(correlation_id)
    if not t.events:
        console.print(f"[yellow]No trace found for: {correlation_id}[/]")
        return

    started = t.started_at.strftime("%H:%M:%S") if t.started_at else "?"
    console.print(Panel(
        f"[bold]Correlation ID:[/] {t.correlation_id}\n"
        f"[bold]Started:[/] {started}\n"
        f"[bold]Duration:[/] {t.total_duration_ms}ms\n"
        f"[bold]Success:[/] {'✅' if t.success else '❌'}\n"
        f"[bold]Sources:[/] {', '.join(t.sources)}",
        title="[bold blue]🔍 Activity Trace[/]",
        border_style="blue",
    ))

    table = Table(title="Events", show_lines=True)
    table.add_column("#", style="dim", width=3)
    table.add_column("Offset", style="dim", width=10)
    table.add_column("Type", style="cyan")
    table.add_column("Source", style="green")
    table.add_column("Info", style="white")

    for i, event in enumerate(t.events, 1):
        offset_ms = (event.timestamp - t.started_at).total_seconds() * 1000 if t.started_at else 0.0
        info = ""
        if event.error:
            info = f"[red]ERR: {event.error[:60]}[/]"
        else:
            for key in ("command", "route", "status", "target", "task"):
                if key in event.payload:
                    info = f"[dim]{key}:[/] {str(event.payload[key])[:80]}"
                    break
        table.add_row(str(i), f"+{offset_ms:.0f}ms", event.event_type, event.source, info)

    console.print(table)


# ── Entry point ───────────────────────────────────────────────

if __name__ == "__main__":
    app()
