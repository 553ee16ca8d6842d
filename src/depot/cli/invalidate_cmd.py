"""CLI command for tag invalidation.

Usage:
    depot invalidate products
    depot invalidate products pallets
"""

from __future__ import annotations

import typer

from depot.cache.service import CacheService
from depot.cli.common import console, run_with_cache, setup_logging

app = typer.Typer(help="Invalidate cached entries by tag")


@app.callback(invoke_without_command=True)
def invalidate(
    tags: list[str] = typer.Argument(..., help="Tags (entity names) to invalidate"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
) -> None:
    """Delete every cached entry carrying any of the given tags."""
    setup_logging(verbose)

    async def _invalidate(cache: CacheService) -> int:
        return await cache.invalidate_by_tags(tags)

    deleted = run_with_cache(_invalidate)
    console.print(f"Invalidated [bold]{deleted}[/bold] keys for tags: {', '.join(tags)}")
