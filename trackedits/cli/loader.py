"""Input-file helpers for the trackedits CLI.

Edit files are JSON.  ``cluster`` accepts either a bare list of edit records
or an object ``{"document_id": ..., "edits": [...]}``.  ``consolidate``
expects::

    {
      "document_id": "chapter-1",
      "text": "optional base text",
      "producers": [{"producer_id": "alice", "kind": "manual", "priority": 3}],
      "proposals": [{"producer_id": "alice", "edits": [...]}]
    }

Edit records use the host wire names (``from``, ``to``, ``removedText``,
``producerId``) or their snake_case equivalents.  A proposal's edits default
their producer id to the proposal's.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import typer

from trackedits.models import EditProposal
from trackedits.session import EditSession


@dataclass
class ClusterInput:
    document_id: str | None
    records: list[Any]


@dataclass
class ConsolidateInput:
    document_id: str
    text: str | None
    proposals: list[EditProposal]


def read_json(path: Path) -> Any:
    """Load *path*, turning I/O and syntax errors into a clean CLI error."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise typer.BadParameter(f"cannot read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{path} is not valid JSON: {exc}") from exc


def load_cluster_input(path: Path) -> ClusterInput:
    data = read_json(path)
    if isinstance(data, list):
        return ClusterInput(document_id=None, records=data)
    if isinstance(data, dict) and isinstance(data.get("edits"), list):
        return ClusterInput(document_id=data.get("document_id"), records=data["edits"])
    raise typer.BadParameter(f"{path} must hold a list of edits or an object with an 'edits' list")


def load_consolidate_input(path: Path, session: EditSession) -> ConsolidateInput:
    """Register the file's producers on *session* and build its proposals.

    Raises:
        typer.BadParameter: If the file lacks document_id, producers or proposals.
        ProducerRegistrationError / EditValidationError: On invalid content.
    """
    data = read_json(path)
    if not isinstance(data, dict):
        raise typer.BadParameter(f"{path} must hold a JSON object")
    missing = [key for key in ("document_id", "producers", "proposals") if key not in data]
    if missing:
        raise typer.BadParameter(f"{path} is missing: {', '.join(missing)}")

    document_id = str(data["document_id"])
    for producer in data["producers"]:
        session.registry.register(producer)

    proposals = []
    for raw in data["proposals"]:
        producer_id = raw["producer_id"]
        edits = [
            edit if "producer_id" in edit or "producerId" in edit else {**edit, "producer_id": producer_id}
            for edit in raw.get("edits", [])
        ]
        proposals.append(
            session.registry.make_proposal(
                producer_id,
                document_id,
                edits,
                proposal_id=raw.get("proposal_id"),
                submitted_at=raw.get("submitted_at"),
            )
        )
    return ConsolidateInput(document_id=document_id, text=data.get("text"), proposals=proposals)
