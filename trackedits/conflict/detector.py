"""Conflict detection between concurrently proposed edit sets.

Five conflict kinds are reported:
  OVERLAP     target ranges of different producers intersect
  SEMANTIC    different producers rewrite the identical span
  DEPENDENCY  an edit presumes another producer's pending edit (``depends_on``)
  RESOURCE    several producers want exclusive access in the same batch
  PRIORITY    a request outranks the current lock holder

Range conflicts come from a sweep over the target ranges of every edit; the
dependency graph is keyed by edit id and cycles are flagged critical.

Output is deterministic: ids are derived from the involved edit/proposal ids
and the list is ordered by (producer registration rank, start offset), so two
runs over the same input produce identical results.  An empty list means the
proposals can be applied side by side.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from trackedits.config import Settings, settings as default_settings
from trackedits.conflict.intervals import Interval, Relation, cross_owner_pairs, intersection, relation
from trackedits.conflict.types import ConflictKind, ConflictRecord, Severity, covering_region
from trackedits.errors import EditValidationError
from trackedits.models import EditProposal, EditRecord

if TYPE_CHECKING:
    from trackedits.consolidation.locks import DocumentLock
    from trackedits.producers import ProducerRegistry

logger = logging.getLogger(__name__)

_KIND_ORDER = {
    ConflictKind.RESOURCE: 0,
    ConflictKind.PRIORITY: 1,
    ConflictKind.DEPENDENCY: 2,
    ConflictKind.SEMANTIC: 3,
    ConflictKind.OVERLAP: 4,
}


# ---------------------------------------------------------------------------
# Dependent-edit coordinates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DependentLocation:
    """Where an edit expressed in post-dependency coordinates falls.

    kind is one of:
      "base"      outside every dependency's output; start/end are base offsets
      "inside"    within the output text of ``dependency``; start/end are
                  offsets relative to that output
      "straddle"  crosses the boundary of a dependency's output
    """

    kind: str
    start: int = 0
    end: int = 0
    dependency: str | None = None


def locate_dependent(edit: EditRecord, dependencies: Iterable[EditRecord]) -> DependentLocation:
    """Map *edit* from post-dependency coordinates back onto the base document."""
    start, end = edit.target_range
    shift = 0
    for dep in sorted(dependencies, key=lambda d: d.target_range):
        d_start, d_end = dep.target_range
        out_start = d_start + shift
        out_end = out_start + len(dep.replacement)
        if end <= out_start:
            break
        if start >= out_end:
            shift += len(dep.replacement) - (d_end - d_start)
            continue
        if out_start <= start and end <= out_end:
            return DependentLocation("inside", start - out_start, end - out_start, dep.id)
        return DependentLocation("straddle", dependency=dep.id)
    return DependentLocation("base", start - shift, end - shift)


def base_range(edit: EditRecord, dependencies: Sequence[EditRecord]) -> tuple[int, int]:
    """Best-effort base-document range of *edit* for overlap detection."""
    if not dependencies:
        return edit.target_range
    location = locate_dependent(edit, dependencies)
    if location.kind == "base":
        return (location.start, location.end)
    dep = next(d for d in dependencies if d.id == location.dependency)
    return dep.target_range


def overlap_severity(a: Interval, b: Interval) -> Severity:
    if a.is_point or b.is_point:
        return Severity.MEDIUM
    ratio = intersection(a, b) / min(a.length, b.length)
    if ratio > 0.8:
        return Severity.CRITICAL
    if ratio > 0.5:
        return Severity.HIGH
    if ratio > 0.2:
        return Severity.MEDIUM
    return Severity.LOW


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class ConflictDetector:
    """Finds conflicts among proposals targeting one document.

    Args:
        settings: Supplies ``overlap_tolerance_chars``.
        registry: Producer registry used for registration rank; without one,
                  producers rank in order of first appearance.
        clock:    Monotonic clock in seconds for ``detected_at``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        registry: ProducerRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or default_settings
        self._registry = registry
        self._clock = clock

    def detect(self, proposals: Iterable[EditProposal], holder: DocumentLock | None = None) -> list[ConflictRecord]:
        """Return every conflict among *proposals*, in deterministic order.

        Args:
            proposals: Concurrent proposals for one document.
            holder:    Lock currently held on the document, if any; proposals
                       with a higher priority produce PRIORITY conflicts.

        Raises:
            EditValidationError: If the proposals target different documents or
                reuse an edit id.
        """
        proposals = list(proposals)
        if len({p.document_id for p in proposals}) > 1:
            raise EditValidationError("proposals passed to detect() must target a single document")

        rank = self._rank_function(proposals)
        owners: dict[str, tuple[EditRecord, EditProposal]] = {}
        for proposal in proposals:
            for edit in proposal.edits:
                if edit.id in owners:
                    raise EditValidationError(
                        f"edit id {edit.id!r} appears in more than one proposal",
                        record_id=edit.id,
                        producer_id=proposal.producer_id,
                    )
                owners[edit.id] = (edit, proposal)

        now = self._clock() * 1000.0
        detection = _Detection(owners, rank, now)

        conflicts: list[ConflictRecord] = []
        conflicts.extend(detection.dependency_conflicts())
        conflicts.extend(detection.range_conflicts(self._settings.overlap_tolerance_chars))
        conflicts.extend(_resource_conflicts(proposals, rank, now))
        if holder is not None:
            conflicts.extend(_priority_conflicts(proposals, holder, now))

        conflicts.sort(key=lambda c: _sort_key(c, rank))
        if conflicts:
            logger.debug(
                "Detected %d conflict(s) among %d proposal(s): %s",
                len(conflicts),
                len(proposals),
                ", ".join(c.id for c in conflicts),
            )
        return conflicts

    def _rank_function(self, proposals: list[EditProposal]) -> Callable[[str], int]:
        if self._registry is not None:
            return self._registry.rank
        order: dict[str, int] = {}
        for proposal in proposals:
            order.setdefault(proposal.producer_id, len(order))
        return lambda producer_id: order.get(producer_id, len(order))


class _Detection:
    """Per-call working state: edit owners and the dependency graph."""

    def __init__(
        self,
        owners: dict[str, tuple[EditRecord, EditProposal]],
        rank: Callable[[str], int],
        now: float,
    ) -> None:
        self.owners = owners
        self.rank = rank
        self.now = now
        self.graph: dict[str, list[str]] = {
            edit_id: [d for d in edit.depends_on if d in owners and owners[d][1].producer_id != proposal.producer_id]
            for edit_id, (edit, proposal) in owners.items()
        }
        self.related: set[frozenset[str]] = {
            frozenset((edit_id, dep)) for edit_id, deps in self.graph.items() for dep in deps
        }

    def _ordered(self, edit_ids: Iterable[str]) -> tuple[str, ...]:
        return tuple(
            sorted(
                edit_ids,
                key=lambda eid: (self.rank(self.owners[eid][1].producer_id), self.owners[eid][0].start, eid),
            )
        )

    def _record(
        self,
        kind: ConflictKind,
        severity: Severity,
        edit_ids: tuple[str, ...],
        details: str,
        *,
        region: tuple[int, int] | None = None,
    ) -> ConflictRecord:
        proposals = [self.owners[eid][1] for eid in edit_ids]
        return ConflictRecord(
            id=":".join((kind.value,) + edit_ids),
            kind=kind,
            severity=severity,
            edit_ids=edit_ids,
            proposal_ids=tuple(dict.fromkeys(p.proposal_id for p in proposals)),
            producer_ids=tuple(dict.fromkeys(p.producer_id for p in proposals)),
            region=region,
            details=details,
            detected_at=self.now,
        )

    # -- dependency ------------------------------------------------------

    def _on_cycle(self) -> set[str]:
        """Edit ids that can reach themselves through depends_on."""
        cyclic: set[str] = set()
        for origin in self.graph:
            stack = list(self.graph[origin])
            seen: set[str] = set()
            while stack:
                node = stack.pop()
                if node == origin:
                    cyclic.add(origin)
                    break
                if node in seen:
                    continue
                seen.add(node)
                stack.extend(self.graph.get(node, ()))
        return cyclic

    def dependency_conflicts(self) -> list[ConflictRecord]:
        cyclic = self._on_cycle()
        records = []
        for edit_id, deps in self.graph.items():
            for dep in deps:
                if edit_id in cyclic and dep in cyclic:
                    severity = Severity.CRITICAL
                    details = f"circular dependency between {dep} and {edit_id}"
                else:
                    severity = Severity.HIGH
                    details = f"{edit_id} presumes the output of pending edit {dep}"
                records.append(
                    self._record(
                        ConflictKind.DEPENDENCY,
                        severity,
                        (dep, edit_id),
                        details,
                        region=self.owners[dep][0].target_range,
                    )
                )
                logger.debug("Dependency %s -> %s (%s)", edit_id, dep, severity.value)
        return records

    # -- overlap / semantic ------------------------------------------------

    def range_conflicts(self, tolerance: int) -> list[ConflictRecord]:
        intervals = []
        for edit_id, (edit, proposal) in self.owners.items():
            deps = [self.owners[d][0] for d in self.graph[edit_id]]
            start, end = base_range(edit, deps)
            intervals.append(Interval(start, end, edit_id, proposal.producer_id))

        records = []
        for a, b in cross_owner_pairs(intervals):
            if frozenset((a.key, b.key)) in self.related:
                continue
            kind = relation(a, b, tolerance)
            if kind is Relation.DISJOINT:
                continue
            edit_ids = self._ordered((a.key, b.key))
            region = (min(a.start, b.start), max(a.end, b.end))
            if kind is Relation.IDENTICAL:
                first, second = (self.owners[eid][0] for eid in edit_ids)
                if first.replacement == second.replacement:
                    severity, details = Severity.INFO, f"equivalent: both propose {first.replacement!r}"
                else:
                    severity, details = Severity.MEDIUM, f"different text for [{a.start}, {a.end})"
                records.append(self._record(ConflictKind.SEMANTIC, severity, edit_ids, details, region=region))
            else:
                overlap = intersection(a, b)
                details = f"ranges intersect over {overlap} character(s)" if overlap else "insert lands on a contested offset"
                records.append(
                    self._record(ConflictKind.OVERLAP, overlap_severity(a, b), edit_ids, details, region=region)
                )
        return records


def _resource_conflicts(proposals: list[EditProposal], rank: Callable[[str], int], now: float) -> list[ConflictRecord]:
    exclusive = sorted((p for p in proposals if p.exclusive), key=lambda p: (rank(p.producer_id), p.proposal_id))
    if len({p.producer_id for p in exclusive}) < 2:
        return []
    edits = [edit for p in exclusive for edit in p.edits]
    proposal_ids = tuple(p.proposal_id for p in exclusive)
    return [
        ConflictRecord(
            id=":".join((ConflictKind.RESOURCE.value,) + proposal_ids),
            kind=ConflictKind.RESOURCE,
            severity=Severity.HIGH,
            edit_ids=tuple(edit.id for edit in edits),
            proposal_ids=proposal_ids,
            producer_ids=tuple(dict.fromkeys(p.producer_id for p in exclusive)),
            region=covering_region(e.target_range for e in edits) if edits else None,
            details=f"{len(exclusive)} proposals request exclusive access",
            detected_at=now,
        )
    ]


def _priority_conflicts(proposals: list[EditProposal], holder: DocumentLock, now: float) -> list[ConflictRecord]:
    records = []
    for proposal in proposals:
        if proposal.producer_id == holder.producer_id or proposal.priority <= holder.priority:
            continue
        records.append(
            ConflictRecord(
                id=f"{ConflictKind.PRIORITY.value}:{holder.request_id}:{proposal.proposal_id}",
                kind=ConflictKind.PRIORITY,
                severity=Severity.HIGH if holder.exclusive else Severity.MEDIUM,
                edit_ids=(),
                proposal_ids=(holder.request_id, proposal.proposal_id),
                producer_ids=(holder.producer_id, proposal.producer_id),
                details=(
                    f"{proposal.producer_id} (priority {proposal.priority}) outranks lock holder "
                    f"{holder.producer_id} (priority {holder.priority})"
                ),
                detected_at=now,
            )
        )
    return records


def _sort_key(conflict: ConflictRecord, rank: Callable[[str], int]) -> tuple:
    producer_rank = min((rank(p) for p in conflict.producer_ids), default=0)
    start = conflict.region[0] if conflict.region else -1
    return (producer_rank, start, _KIND_ORDER[conflict.kind], conflict.id)


def detect(
    proposals: Iterable[EditProposal],
    holder: DocumentLock | None = None,
    *,
    settings: Settings | None = None,
    registry: ProducerRegistry | None = None,
) -> list[ConflictRecord]:
    """Module-level shortcut for ConflictDetector(...).detect()."""
    return ConflictDetector(settings, registry).detect(proposals, holder)
