from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from refinery import services
from refinery.config import get_settings
from refinery.db import init_db
from refinery.pipeline import ConcurrentRunError
from refinery.store import DocumentStore

app = typer.Typer(help="Signal intelligence pipeline: ingest, scrub, detect, synthesize")
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
        handlers = [RichHandler(console=console, show_time=False, show_path=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_path: str | None = typer.Option(None, "--db", help="SQLite database file (overrides REFINERY_DB_PATH)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if db_path:
        os.environ["REFINERY_DB_PATH"] = str(Path(db_path).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if value is None:
        return "-"
    return str(value)


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                table.add_row(f"{key}.{sub_key}", _format_scalar(sub_value))
        elif isinstance(value, list):
            table.add_row(key, "\n".join(str(v) for v in value) or "-")
        else:
            table.add_row(key, _format_scalar(value))
    console.print(Panel(table, title=title, border_style="cyan"))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def run(ctx: typer.Context) -> None:
    """Run the pipeline once over pending captures."""
    init_db()
    try:
        result = asyncio.run(services.run_pipeline(DocumentStore()))
    except ConcurrentRunError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    _print("Pipeline run", result.model_dump(mode="json"), ctx)
    if result.status == "failed":
        raise typer.Exit(code=1)


@app.command()
def maintenance(ctx: typer.Context) -> None:
    """Purge expired nonces and recompute brief freshness."""
    init_db()
    result = asyncio.run(services.run_cleanup(DocumentStore()))
    _print("Maintenance", result.to_dict(), ctx)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8000, help="Bind port."),
    reload: bool = typer.Option(False, help="Reload on code changes."),
) -> None:
    """Serve the HTTP API."""
    import uvicorn

    uvicorn.run("refinery.app:app", host=host, port=port, reload=reload)


@app.command()
def mcp() -> None:
    """Run the MCP server over stdio."""
    from refinery.mcp_server import main

    main()


if __name__ == "__main__":
    app()
