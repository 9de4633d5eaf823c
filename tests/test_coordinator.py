"""Tests for ConsolidationCoordinator."""

from __future__ import annotations

import asyncio

import pytest

from trackedits.conflict.types import (
    ConflictKind,
    ConsolidatedChangeSet,
    EditOutcome,
    ManualCandidate,
    ManualResolutionTicket,
    ProvenanceEntry,
)
from trackedits.consolidation import manual as manual_module
from trackedits.consolidation.coordinator import (
    ConsolidationCoordinator,
    ConsolidationRequest,
    RequestState,
    _settled_state,
)
from trackedits.consolidation.manual import ManualResolutionQueue
from trackedits.consolidation.sink import InMemorySink
from trackedits.errors import (
    ChangeSinkError,
    ConflictUnresolvedError,
    EditValidationError,
    LockPreemptedError,
    LockTimeoutError,
    RequestCancelledError,
)
from trackedits.events.loop_guard import ChangeEvent
from tests.factories import BASE_TEXT, edit, record, replace

ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"

S = RequestState


class HookedSink(InMemorySink):
    """InMemorySink that runs a callback right after applying."""

    def __init__(self, documents, on_apply=None):
        super().__init__(documents)
        self.on_apply = on_apply
        self.rollbacks = 0

    async def apply(self, change_set):
        await super().apply(change_set)
        if self.on_apply is not None:
            self.on_apply()

    async def rollback(self, change_set):
        self.rollbacks += 1
        await super().rollback(change_set)


@pytest.fixture
def producers(session):
    for producer_id, priority in (("A", 1), ("B", 1), ("C", 3)):
        session.registry.register({"producer_id": producer_id, "priority": priority})
    return session.registry


def make(session, producer_id, *edits, document_id="doc"):
    return session.registry.make_proposal(
        producer_id,
        document_id,
        [{**e, "producerId": producer_id} for e in edits],
    )


class TestCommit:
    @pytest.mark.asyncio
    async def test_disjoint_proposals_commit(self, session, producers):
        sink = InMemorySink({"doc": BASE_TEXT})
        coordinator = ConsolidationCoordinator(session, sink)
        commits = []
        session.channels.commits.subscribe(commits.append)

        result = await coordinator.consolidate(
            "doc",
            [make(session, "A", replace("a1", 4, 9, "slow")), make(session, "B", replace("b1", 40, 43, "cat"))],
        )

        assert result.committed
        assert result.history == [S.PENDING, S.LOCK_ACQUIRED, S.CONFLICTS_CHECKED, S.MERGED, S.COMMITTED]
        assert sink.documents["doc"] == "The slow brown fox jumps over the lazy cat"
        assert commits == [result.commit_event]
        assert result.commit_event.hop == 0
        assert result.commit_event.payload is result.change_set
        assert coordinator.locks.holders("doc") == []

    @pytest.mark.asyncio
    async def test_overlap_withholds_region_and_commits_the_rest(self, session, producers):
        sink = InMemorySink({"doc": ALPHABET})
        coordinator = ConsolidationCoordinator(session, sink)
        published = []
        session.channels.conflicts.subscribe(published.append)

        result = await coordinator.consolidate(
            "doc",
            [
                make(session, "A", replace("a1", 10, 20, "ABCDEFGHIJ", base=ALPHABET)),
                make(session, "B", replace("b1", 15, 25, "FGHIJKLMNO", base=ALPHABET), replace("b2", 0, 3, "xyz", base=ALPHABET)),
            ],
        )

        assert result.committed
        assert [c.kind for c in result.conflicts] == [ConflictKind.OVERLAP]
        assert published == result.conflicts
        assert sink.documents["doc"] == "xyz3456789abcdefghijklmnopqrstuvwxyz"
        (ticket,) = coordinator.manual.pending("doc")
        assert ticket.region == (10, 25)

        follow_up = await coordinator.submit_resolution(ticket.ticket_id, "a1")
        assert follow_up.committed
        assert sink.documents["doc"] == "xyz3456789ABCDEFGHIJklmnopqrstuvwxyz"
        assert coordinator.manual.pending() == []

    @pytest.mark.asyncio
    async def test_resolution_is_rebased_after_earlier_edits(self, session, producers):
        sink = InMemorySink({"doc": ALPHABET})
        coordinator = ConsolidationCoordinator(session, sink)

        await coordinator.consolidate(
            "doc",
            [
                make(session, "A", replace("a1", 10, 20, "ABCDEFGHIJ", base=ALPHABET)),
                make(session, "B", replace("b1", 15, 25, "FGHIJKLMNO", base=ALPHABET), replace("b2", 0, 3, "", base=ALPHABET)),
            ],
        )
        assert sink.documents["doc"] == "3456789abcdefghijklmnopqrstuvwxyz"
        (ticket,) = coordinator.manual.pending("doc")

        await coordinator.submit_resolution(ticket.ticket_id, "b1")
        assert sink.documents["doc"] == "3456789abcdeFGHIJKLMNOpqrstuvwxyz"

    @pytest.mark.asyncio
    async def test_unknown_resolution_choice(self, session, producers):
        coordinator = ConsolidationCoordinator(session, InMemorySink({"doc": ALPHABET}))
        await coordinator.consolidate(
            "doc",
            [
                make(session, "A", replace("a1", 10, 20, "ABCDEFGHIJ", base=ALPHABET)),
                make(session, "B", replace("b1", 15, 25, "FGHIJKLMNO", base=ALPHABET)),
            ],
        )
        (ticket,) = coordinator.manual.pending()
        with pytest.raises(ConflictUnresolvedError):
            await coordinator.submit_resolution(ticket.ticket_id, "nope")
        with pytest.raises(ConflictUnresolvedError):
            await coordinator.submit_resolution("manual:missing", "a1")

    @pytest.mark.asyncio
    async def test_waiting_for_a_ticket(self, session, producers):
        coordinator = ConsolidationCoordinator(session, InMemorySink({"doc": ALPHABET}))
        await coordinator.consolidate(
            "doc",
            [
                make(session, "A", replace("a1", 10, 20, "ABCDEFGHIJ", base=ALPHABET)),
                make(session, "B", replace("b1", 15, 25, "FGHIJKLMNO", base=ALPHABET)),
            ],
        )
        (ticket,) = coordinator.manual.pending()
        waiter = asyncio.create_task(coordinator.manual.wait(ticket.ticket_id, timeout=1))
        await asyncio.sleep(0)
        await coordinator.submit_resolution(ticket.ticket_id, "b1")
        assert await waiter == "b1"

    @pytest.mark.asyncio
    async def test_independent_documents_in_parallel(self, session, producers):
        sink = InMemorySink({"one": BASE_TEXT, "two": BASE_TEXT})
        coordinator = ConsolidationCoordinator(session, sink)
        results = await asyncio.gather(
            coordinator.consolidate("one", [make(session, "A", replace("a1", 4, 9, "slow"), document_id="one")]),
            coordinator.consolidate("two", [make(session, "B", replace("b1", 40, 43, "cat"), document_id="two")]),
        )
        assert all(r.committed for r in results)
        assert sink.documents["one"].startswith("The slow")
        assert sink.documents["two"].endswith("lazy cat")

    def test_request_validation(self, session, producers):
        coordinator = ConsolidationCoordinator(session)
        with pytest.raises(EditValidationError):
            coordinator.request("doc", [])
        with pytest.raises(EditValidationError):
            coordinator.request("doc", [make(session, "A", replace("a1", 0, 3, "x"), document_id="other")])

    def test_request_refuses_edit_id_shared_by_two_proposals(self, session, producers):
        coordinator = ConsolidationCoordinator(session)
        with pytest.raises(EditValidationError) as excinfo:
            coordinator.request(
                "doc",
                [make(session, "A", replace("x", 4, 9, "slow")), make(session, "B", replace("x", 40, 43, "cat"))],
            )
        assert excinfo.value.record_id == "x"
        assert excinfo.value.producer_id == "B"

    @pytest.mark.asyncio
    async def test_repeated_conflict_keeps_both_tickets(self, session, producers):
        sink = InMemorySink({"doc": ALPHABET})
        coordinator = ConsolidationCoordinator(session, sink)

        def overlapping():
            return [
                make(session, "A", replace("a1", 10, 20, "ABCDEFGHIJ", base=ALPHABET)),
                make(session, "B", replace("b1", 15, 25, "FGHIJKLMNO", base=ALPHABET)),
            ]

        first = await coordinator.consolidate("doc", overlapping())
        second = await coordinator.consolidate("doc", overlapping())

        (first_ticket,) = first.change_set.manual
        (second_ticket,) = second.change_set.manual
        assert first_ticket.ticket_id != second_ticket.ticket_id
        assert {t.ticket_id for t in coordinator.manual.pending("doc")} == {
            first_ticket.ticket_id,
            second_ticket.ticket_id,
        }

        follow_up = await coordinator.submit_resolution(first_ticket.ticket_id, "a1")
        assert follow_up.committed
        assert sink.documents["doc"] == "0123456789ABCDEFGHIJklmnopqrstuvwxyz"
        assert [t.ticket_id for t in coordinator.manual.pending()] == [second_ticket.ticket_id]

    @pytest.mark.asyncio
    async def test_commit_event_uses_injected_clock(self, session, producers, clock):
        coordinator = ConsolidationCoordinator(session, InMemorySink({"doc": BASE_TEXT}), clock=clock)
        clock.advance_ms(250)

        result = await coordinator.consolidate("doc", [make(session, "A", replace("a1", 4, 9, "slow"))])

        assert result.commit_event.emitted_at == pytest.approx(100_250.0)

    def test_request_uses_highest_priority_proposal(self, session, producers):
        coordinator = ConsolidationCoordinator(session)
        request = coordinator.request(
            "doc",
            [make(session, "A", replace("a1", 0, 3, "x")), make(session, "C", replace("c1", 10, 13, "y"))],
        )
        assert (request.producer_id, request.priority) == ("C", 3)

    def test_illegal_transition(self, session, producers):
        request = ConsolidationCoordinator(session).request("doc", [make(session, "A", replace("a1", 0, 3, "x"))])
        with pytest.raises(RuntimeError):
            request.advance(S.COMMITTED)


class TestAbort:
    @pytest.mark.asyncio
    async def test_lock_timeout_defers_then_aborts(self, make_settings, session, producers):
        settings = make_settings(lock_timeout_ms=30, lock_backoff_initial_ms=5)
        sink = InMemorySink({"doc": BASE_TEXT})
        coordinator = ConsolidationCoordinator(session, sink, settings=settings)
        failures = []
        session.channels.failures.subscribe(failures.append)
        coordinator.locks.try_acquire("doc", producer_id="Z", request_id="blocker", priority=5, preemptible=False)

        result = await coordinator.consolidate("doc", [make(session, "C", replace("c1", 4, 9, "slow"))])

        assert result.history == [S.PENDING, S.DEFERRED, S.ABORTED]
        assert isinstance(result.failure.error, LockTimeoutError)
        assert result.failure.retryable is True
        assert failures == [result.failure]
        assert sink.documents["doc"] == BASE_TEXT

    @pytest.mark.asyncio
    async def test_cancel_before_lock(self, session, producers):
        sink = InMemorySink({"doc": BASE_TEXT})
        coordinator = ConsolidationCoordinator(session, sink)
        request = coordinator.request("doc", [make(session, "A", replace("a1", 4, 9, "slow"))])
        request.cancel()

        result = await coordinator.run(request)

        assert result.history == [S.PENDING, S.ABORTED]
        assert isinstance(result.failure.error, RequestCancelledError)
        assert sink.documents["doc"] == BASE_TEXT
        assert coordinator.locks.holders("doc") == []

    @pytest.mark.asyncio
    async def test_cancel_after_apply_rolls_back(self, session, producers):
        sink = HookedSink({"doc": BASE_TEXT})
        coordinator = ConsolidationCoordinator(session, sink)
        request = coordinator.request("doc", [make(session, "A", replace("a1", 4, 9, "slow"))])
        sink.on_apply = request.cancel

        result = await coordinator.run(request)

        assert result.state is S.ABORTED
        assert result.history[-2:] == [S.MERGED, S.ABORTED]
        assert sink.rollbacks == 1
        assert sink.documents["doc"] == BASE_TEXT
        assert coordinator.locks.holders("doc") == []

    @pytest.mark.asyncio
    async def test_sink_failure_aborts(self, session, producers):
        sink = HookedSink({"doc": "tiny"})
        coordinator = ConsolidationCoordinator(session, sink)

        result = await coordinator.consolidate("doc", [make(session, "A", replace("a1", 20, 25, "x"))])

        assert result.state is S.ABORTED
        assert isinstance(result.failure.error, ChangeSinkError)
        assert sink.documents["doc"] == "tiny"
        assert sink.rollbacks == 1

    @pytest.mark.asyncio
    async def test_invalid_batch_aborts_instead_of_raising(self, session, producers):
        sink = InMemorySink({"doc": BASE_TEXT})
        coordinator = ConsolidationCoordinator(session, sink)
        failures = []
        session.channels.failures.subscribe(failures.append)
        proposals = (
            make(session, "A", replace("x", 4, 9, "slow")),
            make(session, "B", replace("x", 40, 43, "cat")),
        )
        # built by hand: request() refuses this batch up front
        request = ConsolidationRequest("req-dup", "doc", proposals, priority=1, producer_id="A")

        result = await coordinator.run(request)

        assert result.history == [S.PENDING, S.LOCK_ACQUIRED, S.ABORTED]
        assert isinstance(result.failure.error, EditValidationError)
        assert result.failure.retryable is False
        assert failures == [result.failure]
        assert sink.documents["doc"] == BASE_TEXT
        assert coordinator.locks.holders("doc") == []

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self, session, producers):
        sink = InMemorySink({"doc": BASE_TEXT})
        coordinator = ConsolidationCoordinator(session, sink)
        request = coordinator.request("doc", [make(session, "A", replace("a1", 4, 9, "slow"))])

        task = asyncio.create_task(coordinator.run(request))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert request.state is S.ABORTED
        assert sink.documents["doc"] == BASE_TEXT
        assert coordinator.locks.holders("doc") == []

    @pytest.mark.asyncio
    async def test_higher_priority_request_preempts_holder(self, session, producers):
        sink = InMemorySink({"doc": BASE_TEXT})
        coordinator = ConsolidationCoordinator(session, sink)
        low = coordinator.request("doc", [make(session, "A", replace("a1", 4, 9, "slow"))])
        high = coordinator.request("doc", [make(session, "C", replace("c1", 40, 43, "cat"))])

        low_result, high_result = await asyncio.gather(coordinator.run(low), coordinator.run(high))

        assert low_result.state is S.ABORTED
        assert isinstance(low_result.failure.error, LockPreemptedError)
        assert low_result.failure.retryable is True
        assert high_result.committed
        assert [c.kind for c in high_result.conflicts] == [ConflictKind.PRIORITY]
        assert high_result.preempted[0].request_id == low.request_id
        assert sink.documents["doc"] == "The quick brown fox jumps over the lazy cat"


class TestSettledState:
    def _entries(self, *outcomes):
        return tuple(
            ProvenanceEntry(edit_id=f"e{i}", producer_id="A", proposal_id="p", outcome=o)
            for i, o in enumerate(outcomes)
        )

    def test_all_deferred(self):
        change_set = ConsolidatedChangeSet("doc", provenance=self._entries(EditOutcome.DEFERRED, EditOutcome.DROPPED))
        assert _settled_state(change_set) is S.DEFERRED

    def test_all_rejected(self):
        change_set = ConsolidatedChangeSet("doc", provenance=self._entries(EditOutcome.REJECTED))
        assert _settled_state(change_set) is S.REJECTED

    @pytest.mark.asyncio
    async def test_nothing_to_apply_but_deferred_edits_aborts(self, session, producers):
        class DeferEverything:
            def merge(self, document_id, proposals, conflicts):
                entries = tuple(
                    ProvenanceEntry(e.id, p.producer_id, p.proposal_id, EditOutcome.DEFERRED)
                    for p in proposals
                    for e in p.edits
                )
                return ConsolidatedChangeSet(document_id, provenance=entries)

        sink = InMemorySink({"doc": BASE_TEXT})
        coordinator = ConsolidationCoordinator(session, sink)
        coordinator.merger = DeferEverything()

        result = await coordinator.consolidate("doc", [make(session, "A", replace("a1", 4, 9, "slow"))])

        assert result.history[-2:] == [S.DEFERRED, S.ABORTED]
        assert result.failure.reason == "all edits deferred"
        assert result.failure.retryable is True
        assert sink.documents["doc"] == BASE_TEXT
        assert coordinator.locks.holders("doc") == []

    @pytest.mark.asyncio
    async def test_exclusive_loser_is_deferred(self, session, producers):
        coordinator = ConsolidationCoordinator(session, InMemorySink({"doc": BASE_TEXT}))
        session.registry.register({"producer_id": "X", "priority": 2, "exclusive": True})
        session.registry.register({"producer_id": "Y", "priority": 4, "exclusive": True})
        proposals = [
            make(session, "X", replace("x1", 4, 9, "slow")),
            make(session, "Y", edit("y1", "delete", 4, 9, removed="quick")),
        ]
        # Y wins exclusive access; its delete still applies, so the request commits
        result = await coordinator.consolidate("doc", proposals)
        assert result.committed
        assert result.change_set.provenance_for("x1").outcome is EditOutcome.DEFERRED


class TestLoopGuardIntegration:
    @pytest.mark.asyncio
    async def test_commit_event_continues_the_chain(self, session, producers):
        coordinator = ConsolidationCoordinator(session, InMemorySink({"doc": BASE_TEXT}))
        cause = ChangeEvent.root("doc", "B")
        result = await coordinator.consolidate("doc", [make(session, "A", replace("a1", 4, 9, "slow"))], cause=cause)
        assert result.commit_event.correlation_id == cause.correlation_id
        assert result.commit_event.hop == 1

    @pytest.mark.asyncio
    async def test_runaway_chain_is_quarantined(self, session, producers):
        coordinator = ConsolidationCoordinator(session, InMemorySink({"doc": BASE_TEXT}))
        delivered = []
        session.channels.commits.subscribe(delivered.append)
        cause = ChangeEvent(
            event_id="evt-1",
            correlation_id="corr-1",
            hop=session.settings.loop_guard_max_hops,
            document_id="doc",
            producer_id="B",
        )

        result = await coordinator.consolidate("doc", [make(session, "A", replace("a1", 4, 9, "slow"))], cause=cause)

        assert result.committed
        assert delivered == []
        assert session.channels.guard.is_quarantined("corr-1")


class TestManualQueue:
    def _ticket(self, ticket_id):
        candidate = ManualCandidate(
            edit=record(replace("a1", 4, 9, "slow")),
            proposal_id="p-A",
            producer_id="A",
            priority=1,
        )
        return ManualResolutionTicket(ticket_id, "doc", (4, 9), ("overlap:a1:b1",), (candidate,))

    def test_pending_ticket_is_not_replaced(self):
        queue = ManualResolutionQueue()
        queue.add(self._ticket("manual:cs1:overlap:a1:b1"))
        with pytest.raises(ConflictUnresolvedError):
            queue.add(self._ticket("manual:cs1:overlap:a1:b1"))
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_resolved_history_is_bounded(self, monkeypatch):
        monkeypatch.setattr(manual_module, "_MAX_RESOLVED", 2)
        queue = ManualResolutionQueue()
        for n in range(3):
            queue.add(self._ticket(f"t{n}"))
            queue.resolve(f"t{n}", "a1")

        assert await queue.wait("t2") == "a1"
        assert await queue.wait("t1") == "a1"
        with pytest.raises(ConflictUnresolvedError):
            await queue.wait("t0")
