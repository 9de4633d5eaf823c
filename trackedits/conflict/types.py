"""Conflict records and the consolidated change set.

Outcome vocabulary for every original edit of a consolidation:
  KEPT      applied unchanged
  MERGED    combined with another edit into one final edit
  DROPPED   superseded by an equivalent or winning edit
  DEFERRED  held back for a later consolidation (its proposal can defer)
  REJECTED  lost a priority resolution and cannot be deferred
  MANUAL    withheld; a manual-resolution ticket covers its region
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from trackedits.models import EditRecord, new_id


class ConflictKind(str, Enum):
    OVERLAP = "overlap"
    SEMANTIC = "semantic"
    DEPENDENCY = "dependency"
    RESOURCE = "resource"
    PRIORITY = "priority"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class MergeStrategy(str, Enum):
    COMPATIBLE = "compatible"
    SEMANTIC = "semantic"
    PRIORITY = "priority"
    SEQUENTIAL = "sequential"


class ResolutionResult(str, Enum):
    RESOLVED = "resolved"
    DEFERRED = "deferred"
    REJECTED = "rejected"
    MANUAL = "manual"


@dataclass(frozen=True)
class ConflictResolution:
    """How a conflict ended; filled in by the merger."""

    result: ResolutionResult
    strategy: MergeStrategy | None = None
    attempts: int = 0
    ticket_id: str | None = None
    note: str = ""


@dataclass
class ConflictRecord:
    """One detected conflict between concurrently proposed edits.

    Attributes:
        id:           Deterministic id derived from the kind and involved ids.
        kind:         overlap, semantic, dependency, resource or priority.
        severity:     critical, high, medium, low or info.
        edit_ids:     Involved edits, in (registration rank, start) order.
        proposal_ids: Involved proposals (or lock request ids for priority).
        producer_ids: Involved producers.
        region:       Base-document range covering the involved edits, if any.
        details:      Human-readable description.
        detected_at:  Monotonic detection time in milliseconds.
        resolution:   Set once the merger resolved or escalated the conflict.
    """

    id: str
    kind: ConflictKind
    severity: Severity
    edit_ids: tuple[str, ...]
    proposal_ids: tuple[str, ...]
    producer_ids: tuple[str, ...]
    region: tuple[int, int] | None = None
    details: str = ""
    detected_at: float = 0.0
    resolution: ConflictResolution | None = None

    @property
    def equivalent(self) -> bool:
        """Semantic conflict whose edits propose identical final text."""
        return self.kind is ConflictKind.SEMANTIC and self.details.startswith("equivalent")


# ---------------------------------------------------------------------------
# Change set
# ---------------------------------------------------------------------------


class EditOutcome(str, Enum):
    KEPT = "kept"
    MERGED = "merged"
    DROPPED = "dropped"
    DEFERRED = "deferred"
    REJECTED = "rejected"
    MANUAL = "manual"


@dataclass(frozen=True)
class FinalEdit:
    """A non-overlapping edit of the committed change set, in base coordinates."""

    id: str
    start: int
    end: int
    text: str
    source_edit_ids: tuple[str, ...]
    producer_ids: tuple[str, ...]

    @property
    def delta(self) -> int:
        return len(self.text) - (self.end - self.start)


@dataclass(frozen=True)
class ProvenanceEntry:
    edit_id: str
    producer_id: str
    proposal_id: str
    outcome: EditOutcome
    strategy: MergeStrategy | None = None
    reason: str = ""
    conflict_ids: tuple[str, ...] = ()
    final_edit_id: str | None = None


@dataclass(frozen=True)
class ManualCandidate:
    """One option offered by a manual-resolution ticket."""

    edit: EditRecord
    proposal_id: str
    producer_id: str
    priority: int
    can_defer: bool = True


@dataclass(frozen=True)
class ManualResolutionTicket:
    """A conflict region withheld from commit until a human picks a candidate."""

    ticket_id: str
    document_id: str
    region: tuple[int, int]
    conflict_ids: tuple[str, ...]
    candidates: tuple[ManualCandidate, ...]
    reason: str = ""

    def candidate(self, edit_id: str) -> ManualCandidate | None:
        return next((c for c in self.candidates if c.edit.id == edit_id), None)


@dataclass(frozen=True)
class ConsolidatedChangeSet:
    """Ordered, non-overlapping final edits plus full provenance.

    ``edits`` are sorted ascending by start offset.  Applying them in place
    must go from the end of the document backwards; use application_order()
    or apply_to().
    """

    document_id: str
    edits: tuple[FinalEdit, ...] = ()
    provenance: tuple[ProvenanceEntry, ...] = ()
    deferred: tuple[EditRecord, ...] = ()
    manual: tuple[ManualResolutionTicket, ...] = ()
    id: str = field(default_factory=lambda: new_id("changeset"))

    @property
    def is_empty(self) -> bool:
        return not self.edits

    def application_order(self) -> list[FinalEdit]:
        """Final edits by descending start, safe for in-place application."""
        return sorted(self.edits, key=lambda e: (e.start, e.end), reverse=True)

    def apply_to(self, text: str) -> str:
        """Return *text* with every final edit applied.

        Raises:
            ValueError: If an edit reaches past the end of *text*.
        """
        for edit in self.application_order():
            if edit.end > len(text):
                raise ValueError(f"edit {edit.id} [{edit.start}, {edit.end}) exceeds document length {len(text)}")
            text = text[: edit.start] + edit.text + text[edit.end :]
        return text

    def map_offset(self, offset: int) -> int:
        """Translate a base-document offset to its position after this change set."""
        shift = 0
        for edit in self.edits:
            if edit.end <= offset and edit.start < offset:
                shift += edit.delta
            elif edit.start == edit.end == offset:
                shift += edit.delta
        return offset + shift

    def provenance_for(self, edit_id: str) -> ProvenanceEntry | None:
        return next((p for p in self.provenance if p.edit_id == edit_id), None)

    def outcomes(self, outcome: EditOutcome) -> list[ProvenanceEntry]:
        return [p for p in self.provenance if p.outcome is outcome]


def covering_region(ranges: Iterable[tuple[int, int]]) -> tuple[int, int]:
    ranges = list(ranges)
    return (min(r[0] for r in ranges), max(r[1] for r in ranges))
