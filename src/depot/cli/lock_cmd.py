"""CLI command for inspecting distributed locks.

Usage:
    depot lock-holder daily-report
"""

from __future__ import annotations

import typer

from depot.cache.service import CacheService
from depot.cli.common import console, run_with_cache, setup_logging

app = typer.Typer(help="Show the holder of a distributed lock")


@app.callback(invoke_without_command=True)
def lock_holder(
    resource: str = typer.Argument(..., help="Lock resource name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
) -> None:
    """Print the token currently holding ``lock:{resource}``."""
    setup_logging(verbose)

    async def _holder(cache: CacheService) -> str | None:
        return await cache.lock.holder(resource)

    token = run_with_cache(_holder)
    if token is None:
        console.print(f"[green]{resource}[/green] is unlocked")
    else:
        console.print(f"[yellow]{resource}[/yellow] is held by token {token}")
