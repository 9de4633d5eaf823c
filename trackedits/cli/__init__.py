"""trackedits CLI: cluster and consolidate edit files.

Entry point registered in pyproject.toml:
    trackedits = "trackedits.cli:app"

Commands:
    trackedits cluster       group raw edit records into clusters
    trackedits consolidate   resolve concurrent proposals into one change set

Usage:
    trackedits --help
    trackedits cluster edits.json
    trackedits --verbose consolidate proposals.json --interactive
"""

import logging

import typer
from rich.logging import RichHandler

from trackedits.cli.cluster import cluster
from trackedits.cli.consolidate import consolidate

app = typer.Typer(
    name="trackedits",
    help="trackedits: cluster edits and consolidate concurrent changes",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output."),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


app.command()(cluster)
app.command()(consolidate)
