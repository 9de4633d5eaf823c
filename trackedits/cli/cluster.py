"""CLI cluster command: group a file of raw edit records into clusters.

Usage:
    trackedits cluster edits.json
    trackedits cluster edits.json --window 500 --threshold 3
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from trackedits.cli.loader import load_cluster_input
from trackedits.clustering.manager import EditClusterManager
from trackedits.config import settings
from trackedits.models import ClusteringResult, ClusterType
from trackedits.session import EditSession

console = Console()

_TYPE_STYLES = {
    ClusterType.CONSECUTIVE_TYPING: "green",
    ClusterType.WORD_REPLACEMENT: "yellow",
    ClusterType.DELETION: "red",
    ClusterType.MIXED: "magenta",
}


def _cluster_table(result: ClusteringResult) -> Table:
    table = Table(title=f"Clusters for {result.document_id or 'document'}")
    table.add_column("Cluster", style="dim")
    table.add_column("Type")
    table.add_column("Edits", justify="right")
    table.add_column("Time (ms)")
    table.add_column("Words", justify="right")
    table.add_column("Chars", justify="right")
    table.add_column("Change")
    for cluster in result.clusters:
        style = _TYPE_STYLES[cluster.type]
        meta = cluster.metadata
        if meta.original_word is not None or meta.new_word is not None:
            change = f"{meta.original_word!r} -> {meta.new_word!r}"
        else:
            change = f"@{meta.position}"
        table.add_row(
            cluster.id,
            f"[{style}]{cluster.type.value}[/{style}]",
            str(len(cluster.edits)),
            f"{cluster.start_time:g}-{cluster.end_time:g}",
            str(cluster.word_count),
            str(cluster.character_count),
            change,
        )
    return table


def cluster(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file of edit records."),
    window: float | None = typer.Option(None, "--window", help="Override cluster_time_window_ms."),
    threshold: int | None = typer.Option(None, "--threshold", help="Override spatial_threshold_chars."),
) -> None:
    """Group raw edit records into clusters and print them."""
    overrides = {}
    if window is not None:
        overrides["cluster_time_window_ms"] = window
    if threshold is not None:
        overrides["spatial_threshold_chars"] = threshold
    effective = settings.model_copy(update=overrides) if overrides else settings

    data = load_cluster_input(path)
    session = EditSession(settings=effective)
    result = EditClusterManager(effective).cluster_edits(data.records, session, document_id=data.document_id)

    if result.skipped_reason:
        console.print(f"[yellow]Skipped:[/yellow] {result.skipped_reason}")
    elif result.clusters:
        console.print(_cluster_table(result))
    else:
        console.print("[dim]No edits to cluster.[/dim]")

    for rejection in result.rejected:
        console.print(f"[red]Rejected record #{rejection.index}[/red] ({rejection.record_id}): {rejection.error}")
    if result.rejected:
        raise typer.Exit(code=1)
