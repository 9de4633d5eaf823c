"""CLI consolidate command: resolve concurrent proposals into one change set.

Registers the producers declared in the input file, runs one consolidation
against an in-memory document, and prints the change set, its provenance and
the detected conflicts.  With ``--interactive`` every manual-resolution
ticket is walked with a questionary prompt; the chosen candidate is
consolidated as a follow-up request.

Usage:
    trackedits consolidate proposals.json
    trackedits consolidate proposals.json --text chapter.txt --interactive
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import questionary
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from trackedits.cli.loader import load_consolidate_input
from trackedits.conflict.types import ConflictRecord, EditOutcome, ManualResolutionTicket
from trackedits.consolidation.coordinator import ConsolidationCoordinator, ConsolidationResult
from trackedits.consolidation.sink import InMemorySink
from trackedits.errors import TrackEditsError
from trackedits.session import EditSession

console = Console()

_OUTCOME_STYLES = {
    EditOutcome.KEPT: "green",
    EditOutcome.MERGED: "cyan",
    EditOutcome.DROPPED: "dim",
    EditOutcome.DEFERRED: "yellow",
    EditOutcome.REJECTED: "red",
    EditOutcome.MANUAL: "magenta",
}

_SKIP = "Skip (leave withheld)"


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------


def _conflict_table(conflicts: list[ConflictRecord]) -> Table:
    table = Table(title="Conflicts")
    table.add_column("Conflict", style="dim")
    table.add_column("Kind")
    table.add_column("Severity")
    table.add_column("Producers")
    table.add_column("Resolution")
    for conflict in conflicts:
        resolution = conflict.resolution
        if resolution is None:
            outcome = "-"
        elif resolution.strategy is not None:
            outcome = f"{resolution.result.value} ({resolution.strategy.value})"
        else:
            outcome = resolution.result.value
        table.add_row(
            conflict.id,
            conflict.kind.value,
            conflict.severity.value,
            ", ".join(conflict.producer_ids),
            outcome,
        )
    return table


def _provenance_table(result: ConsolidationResult) -> Table:
    table = Table(title="Provenance")
    table.add_column("Edit")
    table.add_column("Producer")
    table.add_column("Outcome")
    table.add_column("Strategy")
    table.add_column("Reason")
    for entry in result.change_set.provenance:
        style = _OUTCOME_STYLES[entry.outcome]
        table.add_row(
            entry.edit_id,
            entry.producer_id,
            f"[{style}]{entry.outcome.value}[/{style}]",
            entry.strategy.value if entry.strategy else "-",
            entry.reason,
        )
    return table


def _change_table(result: ConsolidationResult) -> Table:
    table = Table(title=f"Change set {result.change_set.id}")
    table.add_column("Range")
    table.add_column("Text")
    table.add_column("Sources")
    for edit in result.change_set.edits:
        table.add_row(f"[{edit.start}, {edit.end})", repr(edit.text), ", ".join(edit.source_edit_ids))
    return table


def _print_result(result: ConsolidationResult, sink: InMemorySink) -> None:
    color = "green" if result.committed else "red"
    history = " -> ".join(state.value for state in result.history)
    console.print(Panel(history, title=f"{result.request_id}: {result.state.value}", border_style=color))
    if result.failure is not None:
        console.print(f"[{color}]{result.failure.reason}[/{color}]")
    if result.conflicts:
        console.print(_conflict_table(result.conflicts))
    if result.change_set is not None:
        console.print(_change_table(result))
        console.print(_provenance_table(result))
        if result.committed and result.document_id in sink.documents:
            console.print(Panel(Text(sink.documents[result.document_id]), title="Document", border_style="blue"))


def _ticket_prompt(ticket: ManualResolutionTicket) -> str:
    return f"{ticket.ticket_id}: region {ticket.region} ({ticket.reason}). Keep which edit?"


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------


def consolidate(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file of producers and proposals."),
    text: Path | None = typer.Option(None, "--text", exists=True, dir_okay=False, help="Base document text."),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Resolve manual tickets interactively."),
) -> None:
    """Consolidate concurrent proposals and print the committed change set."""
    session = EditSession()
    try:
        data = load_consolidate_input(path, session)
    except TrackEditsError as exc:
        console.print(f"[red]Invalid input:[/red] {exc}")
        raise typer.Exit(code=2) from exc

    base_text = text.read_text(encoding="utf-8") if text is not None else (data.text or "")
    sink = InMemorySink({data.document_id: base_text})
    coordinator = ConsolidationCoordinator(session, sink)

    result = asyncio.run(coordinator.consolidate(data.document_id, data.proposals))
    _print_result(result, sink)

    if interactive:
        for ticket in coordinator.manual.pending(data.document_id):
            choices = [
                questionary.Choice(
                    title=f"{c.edit.id} by {c.producer_id}: {c.edit.replacement!r}",
                    value=c.edit.id,
                )
                for c in ticket.candidates
            ]
            choices.append(questionary.Choice(title=_SKIP, value=_SKIP))
            chosen = questionary.select(_ticket_prompt(ticket), choices=choices).ask()
            if chosen is None or chosen == _SKIP:
                continue
            follow_up = asyncio.run(coordinator.submit_resolution(ticket.ticket_id, chosen))
            _print_result(follow_up, sink)
    elif len(coordinator.manual):
        console.print(
            f"[magenta]{len(coordinator.manual)} region(s) withheld for manual resolution;"
            " rerun with --interactive to choose.[/magenta]"
        )

    if not result.committed:
        raise typer.Exit(code=1)
