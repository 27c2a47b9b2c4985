"""opsloop CLI — operate the mission pipeline from a terminal.

    opsloop init
    opsloop submit quill draft_tweet -p topic=agents
    opsloop approve <proposal-id>
    opsloop tick
    opsloop worker --once
    opsloop serve --workers 2
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from opsloop.config import settings
from opsloop.context import OpsContext, run_async
from opsloop.exceptions import OpsError
from opsloop.types import Priority, ProposalStatus

console = Console()

app = typer.Typer(
    name="opsloop",
    help="opsloop -- proposals in, missions out, stuck work healed.",
    no_args_is_help=True,
)
policy_app = typer.Typer(help="Read and write policy entries")
app.add_typer(policy_app, name="policy")

_STATUS_STYLE = {
    "ok": "green",
    "idle": "dim",
    "failed": "red",
    "timeout": "yellow",
    "healthy": "green",
    "degraded": "yellow",
    "critical": "red",
}


def _ctx() -> OpsContext:
    return OpsContext.get()


def _parse_params(pairs: list[str]) -> dict:
    params = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{pair}'")
        try:
            params[key] = json.loads(value)
        except json.JSONDecodeError:
            params[key] = value
    return params


@app.command()
def init():
    """Create the workspace and database."""
    ctx = _ctx()

    async def _init():
        Path(ctx.db_path).parent.mkdir(parents=True, exist_ok=True)
        applied = await ctx.store.initialize()
        await ctx.ensure_ready()
        return applied

    applied = run_async(_init())
    console.print(Panel(
        f"[green]opsloop database ready at {ctx.db_path}[/green]\n"
        f"Migrations applied: {', '.join(str(v) for v in applied) or 'none (up to date)'}\n\n"
        "Submit work:\n"
        "  [bold]opsloop submit quill draft_tweet -p topic=agents[/bold]",
        title="opsloop",
        border_style="cyan",
    ))


@app.command()
def submit(
    agent: str = typer.Argument(help="Proposing agent"),
    action: str = typer.Argument(help="Action to perform"),
    param: list[str] = typer.Option([], "--param", "-p", help="key=value (repeatable)"),
    priority: Priority = typer.Option(Priority.NORMAL, "--priority", help="low, normal or high"),
):
    """Submit a proposal through admission control."""
    ctx = _ctx()
    params = _parse_params(param)

    async def _submit():
        await ctx.ensure_ready()
        return await ctx.admission.submit("cli", agent, action, params, priority)

    result = run_async(_submit())
    if result.rejected:
        console.print(f"[red]Rejected[/red] ({result.code}): {result.reason}")
        raise typer.Exit(1)
    if result.mission:
        console.print(
            f"[green]Accepted[/green] proposal {result.proposal.id} "
            f"-> mission {result.mission.id}"
        )
    else:
        console.print(f"[yellow]Pending[/yellow] proposal {result.proposal.id} awaits approval")


def _decide(proposal_id: str, status: ProposalStatus, reason: str) -> None:
    ctx = _ctx()

    async def _update():
        await ctx.ensure_ready()
        return await ctx.admission.update_proposal_status(proposal_id, status, reason)

    try:
        result = run_async(_update())
    except OpsError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    if result.mission:
        console.print(f"[green]Approved[/green] {proposal_id} -> mission {result.mission.id}")
    else:
        console.print(f"[yellow]Rejected[/yellow] {proposal_id}")


@app.command()
def approve(proposal_id: str = typer.Argument(help="Pending proposal id")):
    """Approve a pending proposal and create its mission."""
    _decide(proposal_id, ProposalStatus.ACCEPTED, "")


@app.command()
def reject(
    proposal_id: str = typer.Argument(help="Pending proposal id"),
    reason: str = typer.Option("rejected by operator", "--reason", "-r"),
):
    """Reject a pending proposal."""
    _decide(proposal_id, ProposalStatus.REJECTED, reason)


@app.command()
def tick():
    """Run one control-loop pass: triggers, reactions, recovery, health."""
    ctx = _ctx()

    async def _tick():
        await ctx.ensure_ready()
        return await ctx.loop.tick()

    result = run_async(_tick())

    table = Table(title=f"Tick ({result.duration_ms} ms)")
    table.add_column("Subsystem", style="cyan")
    table.add_column("Status")
    table.add_column("Detail", style="dim")
    for report in result.subsystems:
        style = _STATUS_STYLE.get(report.status, "white")
        detail = report.error or _summarize(report.detail)
        table.add_row(report.name, f"[{style}]{report.status}[/{style}]", detail)
    console.print(table)
    if not result.ok:
        raise typer.Exit(1)


def _summarize(detail: dict) -> str:
    parts = []
    for key in ("fired", "processed", "recovered", "status"):
        if key in detail:
            value = detail[key]
            parts.append(f"{key}={len(value) if isinstance(value, list) else value}")
    return ", ".join(parts)


@app.command()
def health():
    """Show system health."""
    ctx = _ctx()

    async def _health():
        await ctx.ensure_ready()
        return await ctx.sweeper.get_system_health()

    h = run_async(_health())
    style = _STATUS_STYLE[h.status]
    console.print(Panel(
        f"Status:            [{style}]{h.status}[/{style}]\n"
        f"Pending proposals: {h.pending_proposals}\n"
        f"Running missions:  {h.running_missions}\n"
        f"Queued steps:      {h.queued_steps}\n"
        f"Running steps:     {h.running_steps}\n"
        f"Failed steps:      {h.failed_steps}\n"
        f"Stale steps:       {h.stale_steps}\n"
        f"Queue depth:       {h.queue_depth}",
        title="System Health",
        border_style="cyan",
    ))


@app.command()
def events(
    kind: str = typer.Option("", "--kind", "-k", help="Only this event kind"),
    limit: int = typer.Option(20, "--limit", "-n", help="Max events"),
):
    """Show recent events, newest first."""
    ctx = _ctx()

    async def _events():
        await ctx.ensure_ready()
        return await ctx.events.query(kind, limit=limit)

    rows = run_async(_events())
    if not rows:
        console.print("[dim]No events yet.[/dim]")
        return

    table = Table(title="Events")
    table.add_column("#", style="dim", justify="right")
    table.add_column("When", style="dim", no_wrap=True)
    table.add_column("Kind", style="cyan")
    table.add_column("Agent", style="magenta")
    table.add_column("Tags", style="blue")
    for e in rows:
        table.add_row(
            str(e.seq),
            e.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            e.kind,
            e.agent_id or "-",
            ", ".join(e.tags),
        )
    console.print(table)


@app.command()
def worker(
    worker_id: str = typer.Option("", "--id", help="Worker id (default from settings)"),
    once: bool = typer.Option(False, "--once", help="Run claimable steps until none remain, then exit"),
    remote: str = typer.Option("", "--remote", help="Claim steps from an opsloop server URL"),
):
    """Run a mission worker against the local database or a remote server."""
    from opsloop.worker.pool import MissionWorker
    from opsloop.worker.remote import RemoteStepSource

    ctx = _ctx()
    if remote:
        w = MissionWorker(
            RemoteStepSource(remote),
            ctx.handlers,
            worker_id=worker_id or settings.worker_id,
            poll_seconds=settings.worker_poll_seconds,
            max_consecutive_errors=settings.worker_max_consecutive_errors,
            backoff_seconds=settings.worker_backoff_seconds,
        )
    else:
        w = ctx.worker(worker_id or None)

    async def _prepare():
        if not remote:
            await ctx.ensure_ready()

    if once:
        async def _drain():
            await _prepare()
            return await w.drain()

        results = run_async(_drain())
        ok = sum(1 for r in results if r.success)
        console.print(f"{w.worker_id}: {len(results)} step(s) run, {ok} succeeded")
        return

    async def _forever():
        await _prepare()
        await w.run_forever()

    console.print(
        f"[bold cyan]{w.worker_id}[/bold cyan] polling {remote or ctx.db_path} "
        f"every {settings.worker_poll_seconds}s"
    )
    console.print("[dim]Press Ctrl+C to stop.[/dim]")
    try:
        run_async(_forever())
    except KeyboardInterrupt:
        pass


@app.command()
def serve(
    port: int = typer.Option(settings.server_port, "--port", "-p", help="Port to run on"),
    host: str = typer.Option(settings.server_host, "--host", help="Host to bind to"),
    workers: int = typer.Option(0, "--workers", "-w", help="In-process workers to run"),
    no_loop: bool = typer.Option(False, "--no-loop", help="Don't run the control loop on a schedule"),
):
    """Serve the HTTP API, with the control loop and optional workers in-process."""
    import uvicorn

    from opsloop.api.app import configure, ops_app
    from opsloop.worker.pool import WorkerPool

    ctx = _ctx()

    async def _serve():
        await ctx.ensure_ready()
        configure(ctx)
        pool = None
        if workers:
            pool = WorkerPool(
                ctx.scheduler,
                ctx.handlers,
                size=workers,
                poll_seconds=settings.worker_poll_seconds,
                max_consecutive_errors=settings.worker_max_consecutive_errors,
                backoff_seconds=settings.worker_backoff_seconds,
            )
            await pool.start()
        if not no_loop:
            await ctx.loop.start()

        config = uvicorn.Config(ops_app, host=host, port=port, log_level=settings.log_level.lower())
        try:
            await uvicorn.Server(config).serve()
        finally:
            await ctx.loop.stop()
            if pool:
                await pool.stop()

    console.print(f"[bold cyan]opsloop[/bold cyan] serving at http://{host}:{port}")
    console.print("[dim]Press Ctrl+C to stop.[/dim]")
    run_async(_serve())


# ── Policy ────────────────────────────────────────────────────────

@policy_app.command("get")
def policy_get(key: str = typer.Argument("", help="Policy key (omit to list all)")):
    """Show effective policy values."""
    ctx = _ctx()

    async def _get():
        await ctx.ensure_ready()
        return await ctx.policy.list_policies()

    policies = run_async(_get())
    if key:
        if key not in policies:
            console.print(f"[red]No policy '{key}'[/red]")
            raise typer.Exit(1)
        console.print_json(json.dumps(policies[key]))
        return

    table = Table(title="Policy")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white")
    for k, v in policies.items():
        table.add_row(k, json.dumps(v))
    console.print(table)


@policy_app.command("set")
def policy_set(
    key: str = typer.Argument(help="Policy key"),
    value: str = typer.Argument(help="JSON value"),
):
    """Replace a policy value (JSON)."""
    ctx = _ctx()
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON: {e}[/red]")
        raise typer.Exit(1)

    async def _set():
        await ctx.ensure_ready()
        await ctx.policy.set(key, parsed)

    try:
        run_async(_set())
    except ValueError as e:
        console.print(f"[red]Invalid value for '{key}': {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Policy '{key}' updated[/green]")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
