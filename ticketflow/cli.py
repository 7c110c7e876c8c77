"""Command line entry point for ticketflow."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .config import settings
from .db import create_engine, init_db
from .engine import TicketEngine
from .errors import InvalidTransitionError, NotFoundError, SchemaNotInitializedError, TicketFlowError
from .models import Priority

console = Console()

T = TypeVar("T")


def _run(work: Callable[[TicketEngine], Awaitable[T]]) -> T:
    """Run one async unit of work against a fresh engine and report engine errors."""

    async def runner() -> T:
        engine = await TicketEngine.create(settings)
        try:
            return await work(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(runner())
    except SchemaNotInitializedError:
        raise
    except NotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc
    except InvalidTransitionError as exc:
        console.print(f"[red]Rejected:[/red] {exc}")
        raise SystemExit(1) from exc
    except TicketFlowError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise SystemExit(1) from exc


def _split(value: str | None) -> list[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default=None, help="Override TICKETFLOW_LOG_LEVEL")
def main(log_level: str | None) -> None:
    """Workflow-governed ticket boards from the terminal."""
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


@main.command(name="init-db")
def init_db_command() -> None:
    """Create all tables directly (development only; use alembic in production)."""

    async def create() -> None:
        engine = create_engine(settings.async_database_url, echo=settings.db_echo)
        try:
            await init_db(engine)
        finally:
            await engine.dispose()

    asyncio.run(create())
    console.print("[green]Database tables created[/green]")


# =============================================================================
# Boards
# =============================================================================


@main.group()
def board() -> None:
    """Manage boards."""


@board.command(name="create")
@click.argument("name")
@click.option("--workflow", "workflow_id", default=None, help="Workflow id (default from settings)")
@click.option("--description", default="", help="Board description")
def board_create(name: str, workflow_id: str | None, description: str) -> None:
    """Create a board named NAME."""

    async def create(engine: TicketEngine) -> None:
        created = await engine.create_board(
            {"name": name, "workflow_id": workflow_id, "description": description}
        )
        console.print(f"[green]Created board[/green] {created.id} ({created.workflow_id})")

    _run(create)


@board.command(name="list")
def board_list() -> None:
    """List boards, newest first."""

    async def list_all(engine: TicketEngine) -> None:
        boards = await engine.list_boards()
        if not boards:
            console.print("[yellow]No boards found[/yellow]")
            return

        table = Table(title="Boards")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Workflow")
        table.add_column("Created")
        for b in boards:
            table.add_row(b.id, b.name, b.workflow_id, b.created_at.strftime("%Y-%m-%d %H:%M"))
        console.print(table)

    _run(list_all)


@board.command(name="show")
@click.argument("board_id")
@click.option("--no-subtasks", is_flag=True, help="Hide subtasks")
def board_show(board_id: str, no_subtasks: bool) -> None:
    """Show BOARD_ID as kanban columns."""

    async def show(engine: TicketEngine) -> None:
        view = await engine.get_kanban_view(board_id, include_subtasks=not no_subtasks)
        console.print(
            Panel(
                f"[bold]{view.board.name}[/bold]\n{view.board.description or ''}",
                title=f"Board: {view.board.id} ({view.workflow.name})",
            )
        )

        table = Table()
        for state in view.workflow.states:
            table.add_column(f"{state} ({len(view.columns[state])})")
        depth = max((len(c) for c in view.columns.values()), default=0)
        for i in range(depth):
            row = []
            for state in view.workflow.states:
                column = view.columns[state]
                row.append(f"{column[i].title}\n[dim]{column[i].id}[/dim]" if i < len(column) else "")
            table.add_row(*row)
        console.print(table)

    _run(show)


# =============================================================================
# Tickets
# =============================================================================


@main.group()
def ticket() -> None:
    """Manage tickets."""


@ticket.command(name="create")
@click.argument("board_id")
@click.argument("title")
@click.option("--description", default="", help="Ticket description")
@click.option("--priority", type=click.Choice([p.value for p in Priority]), default="medium")
@click.option("--labels", default=None, help="Comma-separated labels")
@click.option("--parent", "parent_id", default=None, help="Create as a subtask of this ticket")
@click.option("--actor", default="cli", help="Acting user recorded in the activity log")
def ticket_create(
    board_id: str,
    title: str,
    description: str,
    priority: str,
    labels: str | None,
    parent_id: str | None,
    actor: str,
) -> None:
    """Create a ticket titled TITLE on BOARD_ID."""

    async def create(engine: TicketEngine) -> None:
        data = {
            "board_id": board_id,
            "title": title,
            "description": description,
            "priority": priority,
            "labels": _split(labels),
        }
        if parent_id:
            created = await engine.create_subtask(parent_id, data, actor)
        else:
            created = await engine.create_ticket(data, actor)
        console.print(f"[green]Created ticket[/green] {created.id} in [cyan]{created.status}[/cyan]")

    _run(create)


@ticket.command(name="move")
@click.argument("ticket_id")
@click.argument("status")
@click.option("--actor", default="cli")
def ticket_move(ticket_id: str, status: str, actor: str) -> None:
    """Move TICKET_ID to STATUS."""

    async def move(engine: TicketEngine) -> None:
        moved = await engine.move_ticket(ticket_id, status, actor)
        console.print(f"[green]{moved.id}[/green] is now [cyan]{moved.status}[/cyan]")

    _run(move)


@ticket.command(name="assign")
@click.argument("ticket_id")
@click.argument("assignees")
@click.option("--actor", default="cli")
def ticket_assign(ticket_id: str, assignees: str, actor: str) -> None:
    """Assign TICKET_ID to comma-separated ASSIGNEES."""

    async def assign(engine: TicketEngine) -> None:
        assigned = await engine.assign_ticket(ticket_id, _split(assignees), actor)
        console.print(f"[green]{assigned.id}[/green] assigned to {', '.join(assigned.assignees) or '-'}")

    _run(assign)


@ticket.command(name="comment")
@click.argument("ticket_id")
@click.argument("content")
@click.option("--author", default="cli")
@click.option("--reply-to", "reply_to", default=None, help="Parent comment id")
def ticket_comment(ticket_id: str, content: str, author: str, reply_to: str | None) -> None:
    """Comment on TICKET_ID."""

    async def comment(engine: TicketEngine) -> None:
        if reply_to:
            created = await engine.reply_to_comment(ticket_id, reply_to, content, author)
        else:
            created = await engine.add_comment(ticket_id, content, author)
        console.print(f"[green]Comment[/green] {created.id}")

    _run(comment)


@ticket.command(name="history")
@click.argument("ticket_id")
@click.option("--limit", default=None, type=int)
def ticket_history(ticket_id: str, limit: int | None) -> None:
    """Show the activity trail of TICKET_ID."""

    async def history(engine: TicketEngine) -> None:
        activities = await engine.get_activity(ticket_id, limit)
        table = Table(title=f"Activity: {ticket_id}")
        table.add_column("When")
        table.add_column("Actor")
        table.add_column("Action", style="cyan")
        table.add_column("Changes")
        for a in activities:
            table.add_row(
                a.created_at.strftime("%Y-%m-%d %H:%M:%S"), a.actor, a.action, ", ".join(a.changes)
            )
        console.print(table)

    _run(history)


@main.command()
@click.argument("board_id")
@click.argument("query")
def search(board_id: str, query: str) -> None:
    """Search BOARD_ID, e.g. 'status:in_progress label:bug login'."""

    async def run_search(engine: TicketEngine) -> None:
        tickets = await engine.search(board_id, query)
        if not tickets:
            console.print("[yellow]No tickets matched[/yellow]")
            return

        table = Table(title=f"Search: {query}")
        table.add_column("ID", style="cyan")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Priority")
        table.add_column("Assignees")
        for t in tickets:
            table.add_row(
                t.id,
                t.title[:40] + "..." if len(t.title) > 40 else t.title,
                t.status,
                t.priority,
                ", ".join(t.assignees),
            )
        console.print(table)

    _run(run_search)


# =============================================================================
# Cumulative flow
# =============================================================================


@main.command()
@click.argument("board_id")
@click.option("--date", "snapshot_date", default=None, help="YYYY-MM-DD (default: today, UTC)")
def snapshot(board_id: str, snapshot_date: str | None) -> None:
    """Record today's per-status counts for BOARD_ID."""

    async def take(engine: TicketEngine) -> None:
        rows = await engine.take_snapshot(board_id, snapshot_date)
        for row in rows:
            console.print(f"{row.snapshot_date.isoformat()}  [cyan]{row.status}[/cyan]  {row.count}")

    _run(take)


@main.command()
@click.argument("board_id")
@click.option("--from", "start", default=None, help="YYYY-MM-DD")
@click.option("--to", "end", default=None, help="YYYY-MM-DD")
def cfd(board_id: str, start: str | None, end: str | None) -> None:
    """Print cumulative flow data for BOARD_ID."""

    async def show(engine: TicketEngine) -> None:
        records = await engine.get_cfd_data(board_id, start, end)
        if not records:
            console.print("[yellow]No snapshots in range[/yellow]")
            return

        statuses = sorted({k for r in records for k in r if k != "date"})
        table = Table(title=f"CFD: {board_id}")
        table.add_column("Date", style="cyan")
        for status in statuses:
            table.add_column(status, justify="right")
        for record in records:
            table.add_row(record["date"], *(str(record.get(s, "")) for s in statuses))
        console.print(table)

    _run(show)


@main.command()
@click.argument("board_id")
@click.option("--from", "start", default=None, help="YYYY-MM-DD")
@click.option("--to", "end", default=None, help="YYYY-MM-DD")
def backfill(board_id: str, start: str | None, end: str | None) -> None:
    """Backfill snapshots for days with status changes (uses current ticket status)."""

    async def run_backfill(engine: TicketEngine) -> None:
        rows = await engine.backfill_snapshots(board_id, start, end)
        days = sorted({r.snapshot_date for r in rows})
        console.print(f"[green]Backfilled {len(days)} day(s)[/green]")

    _run(run_backfill)


@main.command(name="export-activity")
@click.argument("board_id")
@click.option("--format", "fmt", type=click.Choice(["json", "csv"]), default="json")
@click.option("--timezone", default=None, help="IANA timezone for timestamps (default UTC)")
@click.option("--actors", default=None, help="Comma-separated actors")
@click.option("--actions", default=None, help="Comma-separated actions")
@click.option("--limit", default=None, type=int)
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), default=None)
def export_activity(
    board_id: str,
    fmt: str,
    timezone: str | None,
    actors: str | None,
    actions: str | None,
    limit: int | None,
    output: Path | None,
) -> None:
    """Export the activity log of BOARD_ID."""

    async def export(engine: TicketEngine) -> None:
        result = await engine.export_activity_log(
            board_id,
            fmt=fmt,
            timezone=timezone,
            actors=_split(actors) or None,
            actions=_split(actions) or None,
            limit=limit,
        )
        if output is None:
            click.echo(result.data)
        else:
            output.write_text(result.data, encoding="utf-8")
            console.print(f"[green]Wrote {result.count} activities to {output}[/green]")

    _run(export)


if __name__ == "__main__":
    main()
