"""CLI command for flushing the whole cache store.

Usage:
    depot clear --yes
"""

from __future__ import annotations

import typer

from depot.cache.service import CacheService
from depot.cli.common import console, err_console, run_with_cache, setup_logging

app = typer.Typer(help="Flush the entire cache store")


@app.callback(invoke_without_command=True)
def clear(
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Confirm flushing every key in the store database",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
) -> None:
    """Flush every key in the store database.

    This is not a per-entity invalidation; use ``depot invalidate`` for that.
    """
    if not yes:
        err_console.print("[yellow]Refusing to flush the store without --yes[/yellow]")
        raise typer.Exit(code=1)

    setup_logging(verbose)

    async def _clear(cache: CacheService) -> None:
        await cache.clear()

    run_with_cache(_clear)
    console.print("[green]Cache store flushed[/green]")
