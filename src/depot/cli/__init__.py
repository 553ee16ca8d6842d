"""CLI commands for depot.

Provides command-line interface using Typer:
- depot health: Probe the cache store
- depot invalidate: Invalidate entries by tag
- depot clear: Flush the whole store
- depot lock-holder: Show who holds a lock

Usage:
    depot --help
    depot health --format json
    depot invalidate products pallets
    depot clear --yes
"""

import typer

from depot.cli.clear_cmd import app as clear_app
from depot.cli.health_cmd import app as health_app
from depot.cli.invalidate_cmd import app as invalidate_app
from depot.cli.lock_cmd import app as lock_app

# Main CLI application
app = typer.Typer(
    name="depot",
    help="depot: caching and distributed coordination over Redis",
    no_args_is_help=True,
)

app.add_typer(health_app, name="health")
app.add_typer(invalidate_app, name="invalidate")
app.add_typer(clear_app, name="clear")
app.add_typer(lock_app, name="lock-holder")


@app.callback()
def callback() -> None:
    """depot: caching and distributed coordination over Redis."""
    pass


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
