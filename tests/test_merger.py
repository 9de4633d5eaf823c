"""Tests for ChangeMerger."""

from __future__ import annotations

from itertools import combinations

from trackedits.conflict.detector import ConflictDetector
from trackedits.conflict.merger import ChangeMerger, normalize_text
from trackedits.conflict.types import (
    ConflictKind,
    ConsolidatedChangeSet,
    EditOutcome,
    MergeStrategy,
    ResolutionResult,
)
from tests.factories import BASE_TEXT, edit, proposal, replace

ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def run_merge(settings, proposals):
    conflicts = ConflictDetector(settings).detect(proposals)
    change_set = ChangeMerger(settings).merge("doc", proposals, conflicts)
    return conflicts, change_set


def assert_disjoint(change_set: ConsolidatedChangeSet) -> None:
    for a, b in combinations(change_set.edits, 2):
        first, second = sorted((a, b), key=lambda e: (e.start, e.end))
        assert first.end <= second.start
        assert not (first.start == first.end == second.start == second.end)


def outcome(change_set: ConsolidatedChangeSet, edit_id: str) -> EditOutcome:
    return change_set.provenance_for(edit_id).outcome


class TestNoConflict:
    def test_independent_edits_are_kept(self, settings):
        a = proposal("A", replace("a1", 4, 9, "slow"))
        b = proposal("B", replace("b1", 40, 43, "cat"))
        conflicts, change_set = run_merge(settings, [a, b])

        assert conflicts == []
        assert [e.source_edit_ids for e in change_set.edits] == [("a1",), ("b1",)]
        assert change_set.apply_to(BASE_TEXT) == "The slow brown fox jumps over the lazy cat"
        entry = change_set.provenance_for("a1")
        assert entry.outcome is EditOutcome.KEPT
        assert entry.strategy is MergeStrategy.COMPATIBLE
        assert entry.reason == "no conflict"
        assert entry.final_edit_id == "final:a1"

    def test_provenance_covers_every_input_edit(self, settings):
        a = proposal("A", replace("a1", 4, 9, "slow"), replace("a2", 16, 19, "cat"))
        b = proposal("B", replace("b1", 16, 19, "dog"), edit("b2", "insert", 43, text="!"))
        _, change_set = run_merge(settings, [a, b])
        assert sorted(p.edit_id for p in change_set.provenance) == ["a1", "a2", "b1", "b2"]


class TestSemanticMerge:
    def test_superficial_variant_keeps_higher_confidence(self, settings):
        a = proposal("A", replace("a1", 16, 19, "Cat", confidence=0.9))
        b = proposal("B", replace("b1", 16, 19, "cat", confidence=0.4))
        (conflict,), change_set = run_merge(settings, [a, b])

        assert conflict.resolution.result is ResolutionResult.RESOLVED
        assert conflict.resolution.strategy is MergeStrategy.SEMANTIC
        assert conflict.resolution.attempts == 2
        assert outcome(change_set, "a1") is EditOutcome.KEPT
        assert outcome(change_set, "b1") is EditOutcome.DROPPED
        assert change_set.apply_to(BASE_TEXT) == "The quick brown Cat jumps over the lazy dog"

    def test_equivalent_edits_collapse_to_one(self, settings):
        a = proposal("A", replace("a1", 16, 19, "cat"))
        b = proposal("B", replace("b1", 16, 19, "cat"))
        _, change_set = run_merge(settings, [a, b])

        assert len(change_set.edits) == 1
        assert change_set.provenance_for("b1").reason == "equivalent to a1"
        assert change_set.apply_to(BASE_TEXT) == "The quick brown cat jumps over the lazy dog"

    def test_normalize_text(self):
        assert normalize_text("  The   Cat\n") == normalize_text("the cat")


class TestPriorityMerge:
    def test_lower_priority_is_deferred(self, settings):
        a = proposal("A", replace("a1", 4, 9, "slow"), priority=1)
        b = proposal("B", replace("b1", 4, 15, "fast red"), priority=3)
        (conflict,), change_set = run_merge(settings, [a, b])

        assert conflict.resolution.result is ResolutionResult.DEFERRED
        assert conflict.resolution.strategy is MergeStrategy.PRIORITY
        assert outcome(change_set, "a1") is EditOutcome.DEFERRED
        assert [e.id for e in change_set.deferred] == ["a1"]
        assert change_set.apply_to(BASE_TEXT) == "The fast red fox jumps over the lazy dog"

    def test_lower_priority_that_cannot_defer_is_rejected(self, settings):
        a = proposal("A", replace("a1", 4, 9, "slow"), priority=1, can_defer=False)
        b = proposal("B", replace("b1", 4, 15, "fast red"), priority=3)
        (conflict,), change_set = run_merge(settings, [a, b])

        assert conflict.resolution.result is ResolutionResult.REJECTED
        assert outcome(change_set, "a1") is EditOutcome.REJECTED
        assert change_set.deferred == ()


class TestSequentialMerge:
    def test_nested_replacements_compose(self, settings):
        a = proposal("A", replace("a1", 10, 19, "brown dog"))
        b = proposal("B", replace("b1", 10, 15, "red"))
        (conflict,), change_set = run_merge(settings, [a, b])

        assert conflict.resolution.strategy is MergeStrategy.SEQUENTIAL
        assert conflict.resolution.attempts == 4
        (final,) = change_set.edits
        assert final.source_edit_ids == ("a1", "b1")
        assert final.producer_ids == ("A", "B")
        assert outcome(change_set, "a1") is EditOutcome.MERGED
        assert outcome(change_set, "b1") is EditOutcome.MERGED
        assert change_set.apply_to(BASE_TEXT) == "The quick red dog jumps over the lazy dog"

    def test_point_inserts_are_serialized(self, settings):
        a = proposal("A", edit("a1", "insert", 4, text="very "))
        b = proposal("B", edit("b1", "insert", 4, text="really "))
        _, change_set = run_merge(settings, [a, b])

        assert len(change_set.edits) == 1
        assert change_set.apply_to(BASE_TEXT).startswith("The very really quick")

    def test_attempt_budget_escalates_to_manual(self, make_settings):
        settings = make_settings(merge_max_attempts=3)
        a = proposal("A", replace("a1", 10, 19, "brown dog"))
        b = proposal("B", replace("b1", 10, 15, "red"))
        (conflict,), change_set = run_merge(settings, [a, b])

        assert conflict.resolution.result is ResolutionResult.MANUAL
        assert conflict.resolution.attempts == 3
        assert change_set.edits == ()


class TestManualResolution:
    def test_unmergeable_overlap_is_withheld(self, settings):
        a = proposal("A", replace("a1", 10, 20, "ABCDEFGHIJ", base=ALPHABET))
        b = proposal("B", replace("b1", 15, 25, "FGHIJKLMNO", base=ALPHABET))
        c = proposal("C", replace("c1", 0, 3, "xyz", base=ALPHABET))
        (conflict,), change_set = run_merge(settings, [a, b, c])

        assert conflict.resolution.result is ResolutionResult.MANUAL
        assert conflict.resolution.attempts == 5
        (ticket,) = change_set.manual
        assert ticket.ticket_id == f"manual:{change_set.id}:{conflict.id}"
        assert ticket.region == (10, 25)
        assert [c.edit.id for c in ticket.candidates] == ["a1", "b1"]
        assert outcome(change_set, "a1") is EditOutcome.MANUAL
        assert outcome(change_set, "b1") is EditOutcome.MANUAL
        # the rest of the document still commits
        assert [e.source_edit_ids for e in change_set.edits] == [("c1",)]
        assert_disjoint(change_set)


class TestDependencies:
    def test_dependent_inside_output_is_composed(self, settings):
        a = proposal("A", replace("a1", 4, 9, "slow"))
        b = proposal("B", edit("b1", "replace", 4, 8, text="sluggish", removed="slow", dependsOn=["a1"]))
        (conflict,), change_set = run_merge(settings, [a, b])

        assert conflict.kind is ConflictKind.DEPENDENCY
        assert conflict.resolution.strategy is MergeStrategy.SEQUENTIAL
        (final,) = change_set.edits
        assert (final.start, final.end, final.text) == (4, 9, "sluggish")
        assert change_set.apply_to(BASE_TEXT) == "The sluggish brown fox jumps over the lazy dog"

    def test_dependent_after_output_is_shifted(self, settings):
        a = proposal("A", replace("a1", 4, 9, "slow"))
        b = proposal("B", edit("b1", "insert", 42, text="!", dependsOn=["a1"]))
        _, change_set = run_merge(settings, [a, b])

        assert [(e.start, e.end) for e in change_set.edits] == [(4, 9), (43, 43)]
        assert change_set.apply_to(BASE_TEXT) == "The slow brown fox jumps over the lazy dog!"
        assert outcome(change_set, "b1") is EditOutcome.KEPT

    def test_dependents_follow_a_deferred_dependency(self, settings):
        a = proposal("A", replace("a1", 4, 9, "slow"), priority=1)
        b = proposal("B", edit("b1", "insert", 42, text="!", dependsOn=["a1"]), priority=1)
        c = proposal("C", replace("c1", 4, 9, "fast"), priority=3)
        _, change_set = run_merge(settings, [a, b, c])

        assert outcome(change_set, "a1") is EditOutcome.DEFERRED
        assert outcome(change_set, "b1") is EditOutcome.DEFERRED
        assert "depends on a1" in change_set.provenance_for("b1").reason
        assert [e.source_edit_ids for e in change_set.edits] == [("c1",)]
        assert change_set.apply_to(BASE_TEXT) == "The fast brown fox jumps over the lazy dog"

    def test_cycle_goes_to_manual(self, settings):
        a = proposal("A", replace("a1", 0, 3, "A", dependsOn=["b1"]))
        b = proposal("B", replace("b1", 20, 25, "B", dependsOn=["a1"]))
        _, change_set = run_merge(settings, [a, b])

        assert change_set.edits == ()
        assert {outcome(change_set, "a1"), outcome(change_set, "b1")} == {EditOutcome.MANUAL}
        assert change_set.manual


class TestChangeSetInvariants:
    def test_busy_batch_has_no_overlapping_edits(self, settings):
        a = proposal("A", replace("a1", 0, 9, "A quick"), replace("a2", 16, 25, "cat leaps"), priority=2)
        b = proposal("B", replace("b1", 4, 15, "slow brown"), edit("b2", "insert", 30, text="all "), priority=2)
        c = proposal("C", replace("c1", 20, 30, "sits under"), edit("c2", "insert", 30, text="the "), priority=1)
        conflicts, change_set = run_merge(settings, [a, b, c])

        assert conflicts
        assert all(c.resolution is not None for c in conflicts)
        assert_disjoint(change_set)
        assert len(change_set.provenance) == 6
        change_set.apply_to(BASE_TEXT)
