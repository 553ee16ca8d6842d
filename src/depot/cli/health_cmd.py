"""CLI command for checking the cache store.

Usage:
    depot health
    depot health --format json
"""

from __future__ import annotations

import asyncio

import orjson
import typer

from depot.cache.service import HealthReport, StoreInfo
from depot.cli.common import console, setup_logging
from depot.runtime import close_store, create_cache_service, create_store

app = typer.Typer(help="Check cache store health")


async def _check() -> tuple[HealthReport, StoreInfo]:
    store = await create_store()
    try:
        service = create_cache_service(store)
        return await service.health_check(), await service.store_info()
    finally:
        await close_store(store)


@app.callback(invoke_without_command=True)
def health(
    output_format: str = typer.Option(
        "text",
        "--format",
        "-f",
        help="Output format: text, json",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
) -> None:
    """Round-trip a probe value through the store and summarize it.

    Exits with code 1 when the store is unhealthy.
    """
    setup_logging(verbose)
    report, info = asyncio.run(_check())

    if output_format == "json":
        payload = {
            "status": report.status,
            "latency_ms": report.latency_ms,
            "error": report.error,
            "connected": info.connected,
            "memory": info.memory,
            "dbsize": info.dbsize,
        }
        console.print_json(orjson.dumps(payload).decode())
    elif report.healthy:
        console.print(f"[green]healthy[/green] in {report.latency_ms} ms")
        console.print(f"memory: {info.memory}  keys: {info.dbsize}")
    else:
        console.print(f"[red]unhealthy[/red]: {report.error}")

    if not report.healthy:
        raise typer.Exit(code=1)
