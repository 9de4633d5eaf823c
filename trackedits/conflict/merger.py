"""Resolves detected conflicts into one applicable change set.

Edits involved in no conflict are kept as they are.  Every edit-level
conflict is resolved by trying these strategies in order, each try counting
as one attempt against ``merge_max_attempts``:

  1. COMPATIBLE  ranges are in fact disjoint, submitted within
                 ``merge_time_window_ms`` of each other and independent:
                 both are applied side by side.
  2. SEMANTIC    same span, texts equal up to case and whitespace: the
                 higher-confidence edit wins, the other is dropped.
  3. PRIORITY    declared priorities differ and the edits are independent:
                 the higher priority wins, the other is deferred when its
                 proposal can defer, rejected otherwise.
  4. SEQUENTIAL  apply one edit, recompute the other against the result and
                 compose both into a single final edit.  A dependency fixes
                 the order; otherwise registration order is tried, then the
                 reverse order once.

A conflict that no strategy resolves within the attempt budget becomes a
ManualResolutionTicket scoped to its region; the edits involved are withheld
and everything else still commits.  Edits that depend on a dropped, deferred,
rejected or withheld edit share its fate.  A final sweep moves any residual
overlap to manual resolution, so the output never contains overlapping
ranges.

Working model: each surviving edit (or group of composed edits) is a _Span
over base-document offsets carrying its replacement text and, when known,
the base text it replaces.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field

from trackedits.config import Settings, settings as default_settings
from trackedits.conflict.detector import locate_dependent
from trackedits.conflict.intervals import Interval, Relation, relation
from trackedits.conflict.types import (
    ConflictKind,
    ConflictRecord,
    ConflictResolution,
    ConsolidatedChangeSet,
    EditOutcome,
    FinalEdit,
    ManualCandidate,
    ManualResolutionTicket,
    MergeStrategy,
    ProvenanceEntry,
    ResolutionResult,
    Severity,
)
from trackedits.models import EditProposal, EditRecord, new_id

logger = logging.getLogger(__name__)

_RESOLUTION_ORDER = {
    ConflictKind.RESOURCE: 0,
    ConflictKind.PRIORITY: 1,
    ConflictKind.DEPENDENCY: 2,
    ConflictKind.SEMANTIC: 3,
    ConflictKind.OVERLAP: 4,
}


def normalize_text(text: str) -> str:
    """Fold case and collapse whitespace; superficial differences vanish."""
    return " ".join(text.split()).casefold()


def _known_base(edit: EditRecord) -> str | None:
    start, end = edit.target_range
    if start == end:
        return ""
    if len(edit.removed_text) == end - start:
        return edit.removed_text
    return None


def _nearest(haystack: str, needle: str, position: int) -> int | None:
    best = None
    index = haystack.find(needle)
    while index != -1:
        if best is None or abs(index - position) < abs(best - position):
            best = index
        index = haystack.find(needle, index + 1)
    return best


@dataclass
class _Entry:
    edit: EditRecord
    proposal: EditProposal
    rank: int
    outcome: EditOutcome | None = None
    strategy: MergeStrategy | None = None
    reason: str = ""
    conflict_ids: list[str] = field(default_factory=list)
    placed: bool = True

    @property
    def active(self) -> bool:
        return self.outcome is None


@dataclass
class _Span:
    start: int
    end: int
    text: str
    base: str | None
    sources: list[str]

    def interval(self) -> Interval:
        return Interval(self.start, self.end, self.sources[0], "")


@dataclass
class _ManualGroup:
    ticket_id: str
    region: tuple[int, int]
    conflict_ids: list[str]
    candidates: list[str]
    reason: str


class ChangeMerger:
    """Turns proposals plus their detected conflicts into a ConsolidatedChangeSet.

    Args:
        settings: Supplies merge window, attempt budget and default confidence.
        rank:     Producer registration rank; defaults to order of first appearance.
    """

    def __init__(self, settings: Settings | None = None, rank: Callable[[str], int] | None = None) -> None:
        self._settings = settings or default_settings
        self._rank = rank

    def merge(
        self,
        document_id: str,
        proposals: Iterable[EditProposal],
        conflicts: Iterable[ConflictRecord],
    ) -> ConsolidatedChangeSet:
        """Resolve *conflicts* and build the change set.

        Every ConflictRecord gets its ``resolution`` filled in.

        Returns:
            ConsolidatedChangeSet with non-overlapping final edits sorted by
            start offset, provenance for every input edit, deferred edits and
            manual-resolution tickets.
        """
        proposals = list(proposals)
        rank = self._rank
        if rank is None:
            order: dict[str, int] = {}
            for proposal in proposals:
                order.setdefault(proposal.producer_id, len(order))
            rank = lambda producer_id: order.get(producer_id, len(order))

        run = _MergeRun(document_id, proposals, self._settings, rank)
        for conflict in sorted(conflicts, key=lambda c: _RESOLUTION_ORDER[c.kind]):
            run.resolve(conflict)
        change_set = run.finish()

        logger.debug(
            "Merged %d proposal(s) for %s: %d final edit(s), %d deferred, %d manual ticket(s)",
            len(proposals),
            document_id,
            len(change_set.edits),
            len(change_set.deferred),
            len(change_set.manual),
        )
        return change_set


class _MergeRun:
    """Mutable state of one merge() call."""

    def __init__(
        self,
        document_id: str,
        proposals: list[EditProposal],
        settings: Settings,
        rank: Callable[[str], int],
    ) -> None:
        self.document_id = document_id
        self.change_set_id = new_id("changeset")
        self.settings = settings
        self.entries: dict[str, _Entry] = {}
        self.spans: dict[int, _Span] = {}
        self.span_of: dict[str, int] = {}
        self.groups: list[_ManualGroup] = []
        self._next_span = 0

        for proposal in proposals:
            for edit in proposal.edits:
                self.entries[edit.id] = _Entry(edit, proposal, rank(proposal.producer_id))
        for entry in self.entries.values():
            entry.placed = not self._dependencies(entry, active_only=False)
            start, end = entry.edit.target_range
            self._add_span(_Span(start, end, entry.edit.replacement, _known_base(entry.edit), [entry.edit.id]))

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _add_span(self, span: _Span) -> int:
        span_id = self._next_span
        self._next_span += 1
        self.spans[span_id] = span
        for source in span.sources:
            self.span_of[source] = span_id
        return span_id

    def _span(self, edit_id: str) -> _Span:
        return self.spans[self.span_of[edit_id]]

    def _dependencies(self, entry: _Entry, *, active_only: bool = True) -> list[_Entry]:
        deps = []
        for dep_id in entry.edit.depends_on:
            dep = self.entries.get(dep_id)
            if dep is None or dep.proposal.producer_id == entry.proposal.producer_id:
                continue
            if active_only and not dep.active:
                continue
            deps.append(dep)
        return deps

    def _retire(
        self,
        span_id: int,
        outcome_for: Callable[[_Entry], EditOutcome],
        strategy: MergeStrategy | None,
        reason: str,
    ) -> list[_Entry]:
        span = self.spans.pop(span_id)
        retired = []
        for source in span.sources:
            entry = self.entries[source]
            entry.outcome = outcome_for(entry)
            entry.strategy = strategy
            entry.reason = reason
            self.span_of.pop(source, None)
            retired.append(entry)
        return retired

    def _mark(self, span: _Span, strategy: MergeStrategy, reason: str) -> None:
        for source in span.sources:
            entry = self.entries[source]
            entry.strategy = strategy
            entry.reason = reason

    def _withhold(self, span_ids: Iterable[int], conflict_ids: list[str], reason: str) -> _ManualGroup:
        span_ids = list(dict.fromkeys(span_ids))
        spans = [self.spans[sid] for sid in span_ids]
        label = conflict_ids[0] if conflict_ids else "+".join(s.sources[0] for s in spans)
        ticket_id = f"manual:{self.change_set_id}:{label}"
        if any(g.ticket_id == ticket_id for g in self.groups):
            ticket_id = f"{ticket_id}#{len(self.groups)}"
        group = _ManualGroup(
            ticket_id=ticket_id,
            region=(min(s.start for s in spans), max(s.end for s in spans)),
            conflict_ids=list(conflict_ids),
            candidates=[],
            reason=reason,
        )
        for span_id in span_ids:
            retired = self._retire(span_id, lambda _: EditOutcome.MANUAL, None, f"withheld for {group.ticket_id}: {reason}")
            group.candidates.extend(entry.edit.id for entry in retired)
        self.groups.append(group)
        logger.info("Withheld region %s of %s for manual resolution (%s)", group.region, self.document_id, reason)
        return group

    # ------------------------------------------------------------------
    # Conflict resolution
    # ------------------------------------------------------------------

    def resolve(self, conflict: ConflictRecord) -> None:
        for edit_id in conflict.edit_ids:
            if edit_id in self.entries:
                self.entries[edit_id].conflict_ids.append(conflict.id)

        if conflict.kind is ConflictKind.PRIORITY:
            conflict.resolution = ConflictResolution(
                ResolutionResult.RESOLVED, MergeStrategy.PRIORITY, attempts=1, note="lock holder preempted"
            )
            return
        if conflict.kind is ConflictKind.RESOURCE:
            self._resolve_resource(conflict)
            return

        if len(conflict.edit_ids) != 2 or any(e not in self.entries for e in conflict.edit_ids):
            conflict.resolution = ConflictResolution(ResolutionResult.RESOLVED, note="edits not part of this merge")
            return

        a, b = (self.entries[e] for e in conflict.edit_ids)
        if not (a.active and b.active):
            conflict.resolution = ConflictResolution(ResolutionResult.RESOLVED, note="superseded by earlier resolution")
            return
        if self.span_of[a.edit.id] == self.span_of[b.edit.id]:
            conflict.resolution = ConflictResolution(ResolutionResult.RESOLVED, note="already merged")
            return

        attempts = 0
        for strategy, attempt in self._plan(conflict, a, b):
            if attempts >= self.settings.merge_max_attempts:
                break
            attempts += 1
            result = attempt()
            if result is not None:
                conflict.resolution = ConflictResolution(result, strategy, attempts=attempts)
                logger.debug("Conflict %s resolved by %s after %d attempt(s)", conflict.id, strategy.value, attempts)
                return

        group = self._withhold(
            (self.span_of[a.edit.id], self.span_of[b.edit.id]),
            [conflict.id],
            f"unresolved {conflict.kind.value} conflict",
        )
        conflict.resolution = ConflictResolution(ResolutionResult.MANUAL, attempts=attempts, ticket_id=group.ticket_id)

    def _plan(
        self, conflict: ConflictRecord, a: _Entry, b: _Entry
    ) -> Iterator[tuple[MergeStrategy, Callable[[], ResolutionResult | None]]]:
        yield MergeStrategy.COMPATIBLE, lambda: self._compatible(conflict, a, b)
        yield MergeStrategy.SEMANTIC, lambda: self._semantic(conflict, a, b)
        yield MergeStrategy.PRIORITY, lambda: self._priority(conflict, a, b)
        if conflict.kind is ConflictKind.DEPENDENCY:
            # edit_ids are (dependency, dependent)
            yield MergeStrategy.SEQUENTIAL, lambda: self._sequential_dependent(conflict, b)
        else:
            yield MergeStrategy.SEQUENTIAL, lambda: self._sequential(a, b)
            yield MergeStrategy.SEQUENTIAL, lambda: self._sequential(b, a)

    def _compatible(self, conflict: ConflictRecord, a: _Entry, b: _Entry) -> ResolutionResult | None:
        if conflict.kind is ConflictKind.DEPENDENCY or not (a.placed and b.placed):
            return None
        sa, sb = self._span(a.edit.id), self._span(b.edit.id)
        if relation(sa.interval(), sb.interval()) is not Relation.DISJOINT:
            return None
        if abs(a.edit.timestamp - b.edit.timestamp) > self.settings.merge_time_window_ms:
            return None
        self._mark(sa, MergeStrategy.COMPATIBLE, "independent edits applied side by side")
        self._mark(sb, MergeStrategy.COMPATIBLE, "independent edits applied side by side")
        return ResolutionResult.RESOLVED

    def _confidence(self, span: _Span) -> float:
        scores = [self.entries[s].edit.confidence for s in span.sources]
        return max(self.settings.default_confidence if c is None else c for c in scores)

    def _priority_of(self, span: _Span) -> int:
        return max(self.entries[s].proposal.priority for s in span.sources)

    def _rank_of(self, span: _Span) -> int:
        return min(self.entries[s].rank for s in span.sources)

    def _semantic(self, conflict: ConflictRecord, a: _Entry, b: _Entry) -> ResolutionResult | None:
        if conflict.kind is ConflictKind.DEPENDENCY:
            return None
        sa, sb = self._span(a.edit.id), self._span(b.edit.id)
        if (sa.start, sa.end) != (sb.start, sb.end) or normalize_text(sa.text) != normalize_text(sb.text):
            return None

        winner, loser = sorted(
            (sa, sb),
            key=lambda s: (-self._confidence(s), -self._priority_of(s), self._rank_of(s)),
        )
        if winner.text == loser.text:
            reason = f"equivalent to {winner.sources[0]}"
        else:
            reason = f"superficial variant of {winner.sources[0]} with lower confidence"
        self._mark(winner, MergeStrategy.SEMANTIC, f"kept over {loser.sources[0]}")
        self._retire(self.span_of[loser.sources[0]], lambda _: EditOutcome.DROPPED, MergeStrategy.SEMANTIC, reason)
        return ResolutionResult.RESOLVED

    def _priority(self, conflict: ConflictRecord, a: _Entry, b: _Entry) -> ResolutionResult | None:
        if conflict.kind is ConflictKind.DEPENDENCY:
            return None
        sa, sb = self._span(a.edit.id), self._span(b.edit.id)
        pa, pb = self._priority_of(sa), self._priority_of(sb)
        if pa == pb:
            return None
        winner, loser = (sa, sb) if pa > pb else (sb, sa)
        winner_producer = self.entries[winner.sources[0]].proposal.producer_id
        reason = f"lower priority than {winner_producer} ({min(pa, pb)} < {max(pa, pb)})"
        self._mark(winner, MergeStrategy.PRIORITY, f"higher priority than {loser.sources[0]}")
        retired = self._retire(self.span_of[loser.sources[0]], _defer_or_reject, MergeStrategy.PRIORITY, reason)
        if any(entry.outcome is EditOutcome.REJECTED for entry in retired):
            return ResolutionResult.REJECTED
        return ResolutionResult.DEFERRED

    # -- sequential ------------------------------------------------------

    def _sequential(self, first: _Entry, second: _Entry) -> ResolutionResult | None:
        if not (first.placed and second.placed):
            return None
        first_id, second_id = self.span_of[first.edit.id], self.span_of[second.edit.id]
        composed = _compose(self.spans[first_id], self.spans[second_id])
        if composed is None:
            return None
        del self.spans[first_id]
        del self.spans[second_id]
        self._add_span(composed)
        self._mark(composed, MergeStrategy.SEQUENTIAL, f"serialized: {first.edit.id} then {second.edit.id}")
        return ResolutionResult.RESOLVED

    def _sequential_dependent(self, conflict: ConflictRecord, dependent: _Entry) -> ResolutionResult | None:
        if conflict.severity is Severity.CRITICAL:
            return None
        return ResolutionResult.RESOLVED if self._place(dependent, set()) else None

    def _place(self, entry: _Entry, visiting: set[str]) -> bool:
        """Move a dependent edit from post-dependency to base coordinates."""
        if entry.placed:
            return True
        if entry.edit.id in visiting:
            return False
        visiting.add(entry.edit.id)
        deps = self._dependencies(entry)
        for dep in deps:
            if not self._place(dep, visiting):
                return False

        location = locate_dependent(entry.edit, [d.edit for d in deps])
        own_id = self.span_of[entry.edit.id]
        after = ", ".join(d.edit.id for d in deps)
        if location.kind == "base":
            span = self.spans[own_id]
            span.start, span.end = location.start, location.end
            entry.placed = True
            self._mark(span, MergeStrategy.SEQUENTIAL, f"offsets recomputed after {after}")
            return True
        if location.kind == "inside":
            host_id = self.span_of[location.dependency]
            host = self.spans[host_id]
            if host.sources != [location.dependency]:
                return False
            host.text = host.text[: location.start] + entry.edit.replacement + host.text[location.end :]
            host.sources.append(entry.edit.id)
            del self.spans[own_id]
            self.span_of[entry.edit.id] = host_id
            entry.placed = True
            self._mark(host, MergeStrategy.SEQUENTIAL, f"{entry.edit.id} composed into the output of {location.dependency}")
            return True
        return False

    # -- resource --------------------------------------------------------

    def _resolve_resource(self, conflict: ConflictRecord) -> None:
        proposals: dict[str, EditProposal] = {}
        for entry in self.entries.values():
            if entry.proposal.proposal_id in conflict.proposal_ids:
                proposals[entry.proposal.proposal_id] = entry.proposal

        # Exclusive access cannot be shared, so compatible and semantic merges
        # count as two failed attempts; priority and sequential follow.
        top = max((p.priority for p in proposals.values()), default=0)
        winners = [p for p in proposals.values() if p.priority == top]
        if len(winners) == 1 and len(proposals) > 1:
            winner = winners[0]
            reason = f"exclusive access granted to {winner.proposal_id} ({winner.producer_id})"
            outcomes: set[EditOutcome] = set()
            for proposal in proposals.values():
                if proposal is winner:
                    continue
                for edit in proposal.edits:
                    if self.entries[edit.id].active:
                        retired = self._retire(self.span_of[edit.id], _defer_or_reject, MergeStrategy.PRIORITY, reason)
                        outcomes.update(e.outcome for e in retired)
            result = ResolutionResult.REJECTED if EditOutcome.REJECTED in outcomes else ResolutionResult.DEFERRED
            conflict.resolution = ConflictResolution(result, MergeStrategy.PRIORITY, attempts=3)
            return

        conflict.resolution = ConflictResolution(
            ResolutionResult.RESOLVED,
            MergeStrategy.SEQUENTIAL,
            attempts=4,
            note="exclusive proposals applied one after another",
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _propagate(self) -> None:
        """Dependents share the fate of a dependency that did not survive."""
        changed = True
        while changed:
            changed = False
            for entry in self.entries.values():
                if not entry.active:
                    continue
                gone = [d for d in self._dependencies(entry, active_only=False) if not d.active]
                if not gone:
                    continue
                dep = gone[0]
                span_id = self.span_of[entry.edit.id]
                outcome = _follow(dep.outcome, entry)
                reason = f"depends on {dep.edit.id} ({dep.outcome.value})"
                span = self.spans[span_id]
                if span.sources == [entry.edit.id]:
                    self._retire(span_id, lambda _: outcome, dep.strategy, reason)
                else:
                    self._withhold([span_id], list(entry.conflict_ids), reason)
                changed = True

    def _sweep(self) -> None:
        kept: list[int] = []
        for span_id in sorted(self.spans, key=lambda sid: (self.spans[sid].start, self.spans[sid].end, sid)):
            if kept and relation(self.spans[kept[-1]].interval(), self.spans[span_id].interval()) is not Relation.DISJOINT:
                previous = kept.pop()
                conflict_ids = sorted(
                    set(self.entries[self.spans[previous].sources[0]].conflict_ids)
                    & set(self.entries[self.spans[span_id].sources[0]].conflict_ids)
                )
                self._withhold([previous, span_id], conflict_ids, "residual overlap")
                continue
            kept.append(span_id)

    def finish(self) -> ConsolidatedChangeSet:
        for entry in list(self.entries.values()):
            if entry.active and not entry.placed and not self._place(entry, set()):
                self._withhold([self.span_of[entry.edit.id]], list(entry.conflict_ids), "dependent edit cannot be placed")
        self._propagate()
        self._sweep()
        self._propagate()

        final_edits = []
        final_of: dict[str, str] = {}
        for span in sorted(self.spans.values(), key=lambda s: (s.start, s.end)):
            sources = tuple(sorted(span.sources, key=lambda s: (self.entries[s].rank, self.entries[s].edit.start, s)))
            final = FinalEdit(
                id="final:" + "+".join(sources),
                start=span.start,
                end=span.end,
                text=span.text,
                source_edit_ids=sources,
                producer_ids=tuple(dict.fromkeys(self.entries[s].proposal.producer_id for s in sources)),
            )
            final_edits.append(final)
            for source in sources:
                entry = self.entries[source]
                entry.outcome = EditOutcome.MERGED if len(sources) > 1 else EditOutcome.KEPT
                final_of[source] = final.id

        ordered = sorted(self.entries.values(), key=lambda e: (e.rank, e.edit.start, e.edit.id))
        provenance = tuple(
            ProvenanceEntry(
                edit_id=entry.edit.id,
                producer_id=entry.proposal.producer_id,
                proposal_id=entry.proposal.proposal_id,
                outcome=entry.outcome,
                strategy=entry.strategy or (None if entry.conflict_ids else MergeStrategy.COMPATIBLE),
                reason=entry.reason or ("unaffected by its conflicts" if entry.conflict_ids else "no conflict"),
                conflict_ids=tuple(entry.conflict_ids),
                final_edit_id=final_of.get(entry.edit.id),
            )
            for entry in ordered
        )
        tickets = tuple(
            ManualResolutionTicket(
                ticket_id=group.ticket_id,
                document_id=self.document_id,
                region=group.region,
                conflict_ids=tuple(group.conflict_ids),
                candidates=tuple(_candidate(self.entries[c]) for c in group.candidates),
                reason=group.reason,
            )
            for group in self.groups
        )
        return ConsolidatedChangeSet(
            document_id=self.document_id,
            id=self.change_set_id,
            edits=tuple(final_edits),
            provenance=provenance,
            deferred=tuple(e.edit for e in ordered if e.outcome is EditOutcome.DEFERRED),
            manual=tickets,
        )


def _defer_or_reject(entry: _Entry) -> EditOutcome:
    return EditOutcome.DEFERRED if entry.proposal.can_defer else EditOutcome.REJECTED


def _follow(outcome: EditOutcome, entry: _Entry) -> EditOutcome:
    if outcome is EditOutcome.DEFERRED:
        return _defer_or_reject(entry)
    return outcome


def _candidate(entry: _Entry) -> ManualCandidate:
    return ManualCandidate(
        edit=entry.edit,
        proposal_id=entry.proposal.proposal_id,
        producer_id=entry.proposal.producer_id,
        priority=entry.proposal.priority,
        can_defer=entry.proposal.can_defer,
    )


def _compose(first: _Span, second: _Span) -> _Span | None:
    """Apply *first*, then re-target *second* at the updated text.

    Works over the union of both base ranges, which must be fully known
    (inserts, or edits carrying a removed text of the right length) and
    consistent where the ranges overlap.
    """
    if first.base is None or second.base is None:
        return None
    u_start, u_end = min(first.start, second.start), max(first.end, second.end)
    chars: list[str | None] = [None] * (u_end - u_start)
    for span in (first, second):
        for offset, char in enumerate(span.base):
            slot = span.start - u_start + offset
            if chars[slot] is not None and chars[slot] != char:
                return None
            chars[slot] = char
    if any(c is None for c in chars):
        return None
    base = "".join(chars)  # type: ignore[arg-type]

    updated = base[: first.start - u_start] + first.text + base[first.end - u_start :]
    delta = len(first.text) - (first.end - first.start)
    if second.start >= first.end:
        mapped: int | None = second.start - u_start + delta
    elif second.start < first.start:
        mapped = second.start - u_start
    else:
        mapped = None

    if second.start == second.end:
        if mapped is None:
            return None
        at, removed = mapped, 0
    else:
        found = _nearest(updated, second.base, first.start - u_start if mapped is None else mapped)
        if found is None:
            return None
        at, removed = found, len(second.base)

    text = updated[:at] + second.text + updated[at + removed :]
    return _Span(u_start, u_end, text, base, first.sources + second.sources)

