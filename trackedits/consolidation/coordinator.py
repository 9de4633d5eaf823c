"""Consolidation of concurrent proposals into one committed change set.

Request lifecycle:
  PENDING -> LOCK_ACQUIRED -> CONFLICTS_CHECKED -> MERGED | DEFERRED | REJECTED
          -> COMMITTED | ABORTED

  MERGED     the change set is handed to the ChangeSink, the commit event is
             published on the guarded commits channel, then COMMITTED
  DEFERRED   nothing to apply, some edits deferred; ABORTED (retryable)
  REJECTED   nothing to apply, every edit rejected; ABORTED
  lock wait  PENDING -> DEFERRED -> ABORTED with a retryable LockTimeoutError

The document lock is released on every exit path.  Cancellation before the
lock is granted aborts without side effects; afterwards the sink is rolled
back if apply() had been invoked.  A holder whose lock was preempted aborts
with a retryable LockPreemptedError.  Every abort publishes a
ConsolidationFailure on the failures channel.

Independent documents consolidate in parallel: run() only ever waits on the
lock of its own document.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from trackedits.config import Settings
from trackedits.conflict.detector import ConflictDetector
from trackedits.conflict.merger import ChangeMerger
from trackedits.conflict.types import ConflictRecord, ConsolidatedChangeSet, EditOutcome
from trackedits.consolidation.locks import DocumentLock, LockManager, LockMode
from trackedits.consolidation.manual import ManualResolutionQueue
from trackedits.consolidation.sink import ChangeSink, InMemorySink
from trackedits.errors import (
    EditValidationError,
    LockTimeoutError,
    RequestCancelledError,
    TrackEditsError,
)
from trackedits.events.loop_guard import ChangeEvent
from trackedits.models import EditProposal, new_id
from trackedits.session import EditSession

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    PENDING = "pending"
    LOCK_ACQUIRED = "lock_acquired"
    CONFLICTS_CHECKED = "conflicts_checked"
    MERGED = "merged"
    DEFERRED = "deferred"
    REJECTED = "rejected"
    COMMITTED = "committed"
    ABORTED = "aborted"


_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.PENDING: frozenset({RequestState.LOCK_ACQUIRED, RequestState.DEFERRED, RequestState.ABORTED}),
    RequestState.LOCK_ACQUIRED: frozenset({RequestState.CONFLICTS_CHECKED, RequestState.ABORTED}),
    RequestState.CONFLICTS_CHECKED: frozenset(
        {RequestState.MERGED, RequestState.DEFERRED, RequestState.REJECTED, RequestState.ABORTED}
    ),
    RequestState.MERGED: frozenset({RequestState.COMMITTED, RequestState.ABORTED}),
    RequestState.DEFERRED: frozenset({RequestState.COMMITTED, RequestState.ABORTED}),
    RequestState.REJECTED: frozenset({RequestState.COMMITTED, RequestState.ABORTED}),
    RequestState.COMMITTED: frozenset(),
    RequestState.ABORTED: frozenset(),
}

TERMINAL_STATES = frozenset({RequestState.COMMITTED, RequestState.ABORTED})


@dataclass
class ConsolidationRequest:
    """One consolidation of concurrent proposals for a document.

    ``priority`` and ``producer_id`` are those of the highest-priority
    proposal; they are what the document lock is requested with.
    """

    request_id: str
    document_id: str
    proposals: tuple[EditProposal, ...]
    priority: int
    producer_id: str
    cause: ChangeEvent | None = None
    mode: LockMode = LockMode.EXCLUSIVE
    state: RequestState = RequestState.PENDING
    history: list[RequestState] = field(default_factory=lambda: [RequestState.PENDING])
    cancelled: bool = False

    def cancel(self) -> None:
        """Ask the request to abort at its next checkpoint."""
        self.cancelled = True

    def advance(self, state: RequestState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"request {self.request_id}: illegal transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)


@dataclass(frozen=True)
class ConsolidationFailure:
    """Published on the failures channel whenever a request aborts."""

    request_id: str
    document_id: str
    reason: str
    error: TrackEditsError | None = None
    retryable: bool = False


@dataclass
class ConsolidationResult:
    request_id: str
    document_id: str
    state: RequestState
    history: list[RequestState]
    change_set: ConsolidatedChangeSet | None = None
    conflicts: list[ConflictRecord] = field(default_factory=list)
    failure: ConsolidationFailure | None = None
    commit_event: ChangeEvent | None = None
    preempted: tuple[DocumentLock, ...] = ()

    @property
    def committed(self) -> bool:
        return self.state is RequestState.COMMITTED


class ConsolidationCoordinator:
    """Drives lock acquisition, conflict detection, merging and commit.

    Args:
        session:  Owner of the producer registry and the channels.
        sink:     Host apply collaborator; an InMemorySink by default.
        settings: Overrides the session settings.
        locks:    Lock manager shared by every coordinator of a host.
        clock:    Monotonic clock in seconds, used to stamp commit events and
                  follow-up proposals; injectable for tests.
    """

    def __init__(
        self,
        session: EditSession | None = None,
        sink: ChangeSink | None = None,
        *,
        settings: Settings | None = None,
        locks: LockManager | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session or EditSession(settings=settings)
        self.settings = settings or self.session.settings
        self.sink = sink or InMemorySink()
        self.locks = locks or LockManager(self.settings, clock)
        self._clock = clock
        self.channels = self.session.channels
        self.detector = ConflictDetector(self.settings, self.session.registry)
        self.merger = ChangeMerger(self.settings, rank=self.session.registry.rank)
        self.manual = ManualResolutionQueue()
        self._ticket_origin: dict[str, ConsolidatedChangeSet] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def request(
        self,
        document_id: str,
        proposals: Iterable[EditProposal],
        cause: ChangeEvent | None = None,
    ) -> ConsolidationRequest:
        """Build a PENDING request.

        Raises:
            EditValidationError: If there are no proposals, one targets
                another document, or an edit id appears in two proposals.
        """
        proposals = tuple(proposals)
        if not proposals:
            raise EditValidationError(f"consolidation of {document_id!r} needs at least one proposal")
        owners: dict[str, str] = {}
        for proposal in proposals:
            if proposal.document_id != document_id:
                raise EditValidationError(
                    f"proposal {proposal.proposal_id} targets {proposal.document_id!r}, not {document_id!r}",
                    producer_id=proposal.producer_id,
                )
            for edit in proposal.edits:
                owner = owners.setdefault(edit.id, proposal.proposal_id)
                if owner != proposal.proposal_id:
                    raise EditValidationError(
                        f"edit id {edit.id!r} appears in proposals {owner} and {proposal.proposal_id}",
                        record_id=edit.id,
                        producer_id=proposal.producer_id,
                    )
        lead = max(proposals, key=lambda p: (p.priority, -self.session.registry.rank(p.producer_id)))
        return ConsolidationRequest(
            request_id=new_id("req"),
            document_id=document_id,
            proposals=proposals,
            priority=lead.priority,
            producer_id=lead.producer_id,
            cause=cause,
        )

    async def consolidate(
        self,
        document_id: str,
        proposals: Iterable[EditProposal],
        cause: ChangeEvent | None = None,
    ) -> ConsolidationResult:
        return await self.run(self.request(document_id, proposals, cause))

    async def run(self, request: ConsolidationRequest) -> ConsolidationResult:
        """Take *request* to COMMITTED or ABORTED.

        Failures are reported in the result (and on the failures channel),
        not raised.  asyncio cancellation is honoured: the request is aborted
        with rollback and CancelledError propagates.
        """
        result = ConsolidationResult(request.request_id, request.document_id, request.state, request.history)

        if request.cancelled:
            return self._abort(request, result, RequestCancelledError(f"request {request.request_id} cancelled"))

        try:
            grant = await self.locks.acquire(
                request.document_id,
                producer_id=request.producer_id,
                request_id=request.request_id,
                priority=request.priority,
                mode=request.mode,
            )
        except LockTimeoutError as exc:
            request.advance(RequestState.DEFERRED)
            return self._abort(request, result, exc)
        except asyncio.CancelledError:
            self._abort(request, result, RequestCancelledError(f"request {request.request_id} cancelled"))
            raise

        lock = grant.lock
        result.preempted = grant.preempted
        request.advance(RequestState.LOCK_ACQUIRED)
        change_set: ConsolidatedChangeSet | None = None
        applied = False
        try:
            # checkpoint: other tasks (and cancellation) may run here
            await asyncio.sleep(0)
            self._checkpoint(request, lock)

            holder = next((h for h in grant.preempted if h.exclusive), None)
            conflicts = self.detector.detect(request.proposals, holder=holder)
            result.conflicts = conflicts
            request.advance(RequestState.CONFLICTS_CHECKED)

            change_set = self.merger.merge(request.document_id, request.proposals, conflicts)
            result.change_set = change_set
            for conflict in conflicts:
                self.channels.conflicts.publish(conflict)
            for ticket in change_set.manual:
                self.manual.add(ticket)
                self._ticket_origin[ticket.ticket_id] = change_set

            settled = _settled_state(change_set)
            request.advance(settled)
            if settled is not RequestState.MERGED:
                reason = "all edits deferred" if settled is RequestState.DEFERRED else "all edits rejected"
                return self._abort(request, result, None, reason=reason, retryable=settled is RequestState.DEFERRED)

            self._checkpoint(request, lock)
            self.locks.begin_commit(lock)
            if change_set.edits:
                applied = True
                await self.sink.apply(change_set)
            self._checkpoint(request, lock)

            request.advance(RequestState.COMMITTED)
            result.commit_event = self._publish_commit(request, change_set)
            logger.info(
                "Committed %s on %s: %d edit(s), %d conflict(s), %d manual ticket(s)",
                request.request_id,
                request.document_id,
                len(change_set.edits),
                len(conflicts),
                len(change_set.manual),
            )
            return self._finish(request, result)
        except TrackEditsError as exc:
            # any library failure ends the request as ABORTED
            if applied and change_set is not None:
                await self.sink.rollback(change_set)
            return self._abort(request, result, exc)
        except asyncio.CancelledError:
            if applied and change_set is not None:
                await self.sink.rollback(change_set)
            self._abort(request, result, RequestCancelledError(f"request {request.request_id} cancelled"))
            raise
        finally:
            self.locks.release(lock)

    async def submit_resolution(self, ticket_id: str, chosen_edit_id: str) -> ConsolidationResult:
        """Apply the human choice for a manual-resolution ticket.

        The chosen candidate is re-based onto the document as it stands after
        the change set that produced the ticket, then consolidated as a new
        request covering that region only.

        Raises:
            ConflictUnresolvedError: If the ticket is not pending or the edit
                is not one of its candidates.
        """
        ticket = self.manual.get(ticket_id)
        candidate = self.manual.resolve(ticket_id, chosen_edit_id)
        origin = self._ticket_origin.pop(ticket_id, None)

        edit = candidate.edit
        start, end = edit.start, edit.end
        if origin is not None:
            length = end - start
            start = origin.map_offset(edit.start)
            end = start + length if edit.target_range[0] == edit.target_range[1] else origin.map_offset(edit.end)
        rebased = edit.model_copy(update={"start": start, "end": end, "depends_on": ()})

        proposal = EditProposal(
            proposal_id=new_id("prop"),
            producer_id=candidate.producer_id,
            document_id=ticket.document_id,
            edits=(rebased,),
            priority=candidate.priority,
            can_defer=candidate.can_defer,
            submitted_at=self._clock() * 1000.0,
        )
        return await self.consolidate(ticket.document_id, [proposal])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _checkpoint(self, request: ConsolidationRequest, lock: DocumentLock) -> None:
        if request.cancelled:
            raise RequestCancelledError(f"request {request.request_id} cancelled")
        self.locks.ensure_valid(lock)

    def _publish_commit(self, request: ConsolidationRequest, change_set: ConsolidatedChangeSet) -> ChangeEvent:
        now = self._clock() * 1000.0
        if request.cause is not None:
            event = request.cause.next_hop(request.producer_id, change_set, emitted_at=now)
        else:
            event = ChangeEvent.root(request.document_id, request.producer_id, change_set, emitted_at=now)
        self.channels.commits.publish(event)
        return event

    def _finish(self, request: ConsolidationRequest, result: ConsolidationResult) -> ConsolidationResult:
        result.state = request.state
        result.history = list(request.history)
        return result

    def _abort(
        self,
        request: ConsolidationRequest,
        result: ConsolidationResult,
        error: TrackEditsError | None,
        *,
        reason: str | None = None,
        retryable: bool | None = None,
    ) -> ConsolidationResult:
        request.advance(RequestState.ABORTED)
        failure = ConsolidationFailure(
            request_id=request.request_id,
            document_id=request.document_id,
            reason=reason or str(error),
            error=error,
            retryable=error.retryable if retryable is None and error is not None else bool(retryable),
        )
        result.failure = failure
        logger.warning("Aborted %s on %s: %s", request.request_id, request.document_id, failure.reason)
        self.channels.failures.publish(failure)
        return self._finish(request, result)


def _settled_state(change_set: ConsolidatedChangeSet) -> RequestState:
    if change_set.edits or change_set.manual:
        return RequestState.MERGED
    outcomes = {entry.outcome for entry in change_set.provenance}
    if EditOutcome.DEFERRED in outcomes:
        return RequestState.DEFERRED
    if outcomes and outcomes <= {EditOutcome.REJECTED}:
        return RequestState.REJECTED
    return RequestState.MERGED
