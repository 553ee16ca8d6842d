"""Helpers shared by the CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer
from rich.console import Console

from depot.cache.service import CacheService
from depot.config import settings
from depot.observability.logging import configure_logging
from depot.runtime import init_cache, shutdown_cache

T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)


def setup_logging(verbose: bool) -> None:
    configure_logging(
        json_format=settings.log_json,
        level="DEBUG" if verbose else settings.log_level,
    )


def run_with_cache(action: Callable[[CacheService], Awaitable[T]]) -> T:
    """Resolve the cache, run ``action`` against it and shut down.

    Exits with code 2 when no cache is available.
    """

    async def _main() -> T:
        try:
            cache = await init_cache()
            if cache is None:
                err_console.print("[red]Cache is not available[/red] (disabled or unreachable)")
                raise typer.Exit(code=2)
            return await action(cache)
        finally:
            await shutdown_cache()

    return asyncio.run(_main())
