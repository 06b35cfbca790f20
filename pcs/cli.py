from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from pcs import services
from pcs.db import get_session_factory, init_db, session_scope
from pcs.errors import ProgressionError
from pcs.notifier import get_notifier

app = typer.Typer(help="School progression maintenance: counts, rounds, and batch reconciliation")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_url: str | None = typer.Option(None, "--db-url", help="SQLAlchemy URL or SQLite path."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    ctx.obj = {"json_output": json_output}
    _configure_logging(verbose=verbose, json_output=json_output)
    init_db(db_url)


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if ctx.obj and ctx.obj.get("json_output"):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        table.add_row(key, value if isinstance(value, str) else json.dumps(value))
    console.print(Panel(table, title=title, border_style="cyan"))


def _fail(exc: ProgressionError) -> None:
    console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
    raise typer.Exit(code=1)


@app.command("counts")
def counts_command(
    ctx: typer.Context,
    school_id: int = typer.Argument(..., help="School id"),
    round_number: int | None = typer.Option(None, "--round", help="Round (defaults to current)"),
) -> None:
    try:
        with session_scope() as session:
            payload = services.get_progression_counts(session, school_id, round_number)
    except ProgressionError as exc:
        _fail(exc)
    _print(f"school {school_id} counts", payload, ctx)


@app.command("new-round")
def new_round_command(ctx: typer.Context, school_id: int = typer.Argument(..., help="School id")) -> None:
    try:
        with session_scope() as session:
            school = services.start_new_round(session, school_id)
            payload = services.school_summary(school)
    except ProgressionError as exc:
        _fail(exc)
    _print(f"school {school_id} new round", payload, ctx)


@app.command("reconcile")
def reconcile_command(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Report schools needing repair without writing."),
    workers: int | None = typer.Option(None, "--workers", help="Concurrent schools (default from settings)."),
) -> None:
    async def _run() -> dict:
        report = await services.reconcile_all(get_session_factory(), dry_run=dry_run, workers=workers)
        await get_notifier().drain()
        return report

    _print("reconcile", asyncio.run(_run()), ctx)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
