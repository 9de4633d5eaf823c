"""Queue of manual-resolution tickets awaiting a human decision.

Tickets are added by the coordinator when the merger withholds a region.
Callers list them with pending(), may suspend on ``await wait(ticket_id)``
until someone picks a candidate, and resolve them with resolve() (normally
through ConsolidationCoordinator.submit_resolution, which also re-runs a
consolidation for the chosen edit).
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict

from trackedits.conflict.types import ManualCandidate, ManualResolutionTicket
from trackedits.errors import ConflictUnresolvedError

logger = logging.getLogger(__name__)

# Resolved ticket ids remembered for late wait() callers
_MAX_RESOLVED = 1000


class ManualResolutionQueue:
    """Pending manual-resolution tickets and the waiters suspended on them.

    Ticket ids are unique per change set, so tickets from separate
    consolidations never replace one another.  The choice made for a
    resolved ticket is kept for the most recent resolutions only.
    """

    def __init__(self) -> None:
        self._pending: dict[str, ManualResolutionTicket] = {}
        self._resolved: OrderedDict[str, str] = OrderedDict()
        self._waiters: dict[str, list[asyncio.Future[str]]] = {}

    def add(self, ticket: ManualResolutionTicket) -> None:
        """Queue *ticket*.

        Raises:
            ConflictUnresolvedError: If a ticket with the same id is pending.
        """
        if ticket.ticket_id in self._pending:
            raise ConflictUnresolvedError(f"ticket {ticket.ticket_id!r} is already pending", ticket_id=ticket.ticket_id)
        self._pending[ticket.ticket_id] = ticket
        self._resolved.pop(ticket.ticket_id, None)
        logger.info(
            "Manual resolution needed for %s region %s (%d candidate(s))",
            ticket.document_id,
            ticket.region,
            len(ticket.candidates),
        )

    def pending(self, document_id: str | None = None) -> list[ManualResolutionTicket]:
        return [t for t in self._pending.values() if document_id is None or t.document_id == document_id]

    def get(self, ticket_id: str) -> ManualResolutionTicket:
        """Return a pending ticket.

        Raises:
            ConflictUnresolvedError: If no such ticket is pending.
        """
        ticket = self._pending.get(ticket_id)
        if ticket is None:
            raise ConflictUnresolvedError(f"no pending manual-resolution ticket {ticket_id!r}", ticket_id=ticket_id)
        return ticket

    async def wait(self, ticket_id: str, timeout: float | None = None) -> str:
        """Suspend until *ticket_id* is resolved; returns the chosen edit id.

        Raises:
            ConflictUnresolvedError: If the ticket is unknown or discarded.
            asyncio.TimeoutError: If *timeout* seconds pass first.
        """
        if ticket_id in self._resolved:
            return self._resolved[ticket_id]
        self.get(ticket_id)
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(ticket_id, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            waiters = self._waiters.get(ticket_id, [])
            if future in waiters:
                waiters.remove(future)

    def resolve(self, ticket_id: str, chosen_edit_id: str) -> ManualCandidate:
        """Record the human decision for *ticket_id*.

        Raises:
            ConflictUnresolvedError: If the ticket is not pending or
                *chosen_edit_id* is not one of its candidates.
        """
        ticket = self.get(ticket_id)
        candidate = ticket.candidate(chosen_edit_id)
        if candidate is None:
            raise ConflictUnresolvedError(
                f"edit {chosen_edit_id!r} is not a candidate of ticket {ticket_id!r}", ticket_id=ticket_id
            )
        del self._pending[ticket_id]
        self._resolved[ticket_id] = chosen_edit_id
        while len(self._resolved) > _MAX_RESOLVED:
            self._resolved.popitem(last=False)
        for future in self._waiters.pop(ticket_id, []):
            if not future.done():
                future.set_result(chosen_edit_id)
        logger.info("Ticket %s resolved with %s", ticket_id, chosen_edit_id)
        return candidate

    def discard(self, ticket_id: str) -> bool:
        """Drop a ticket without choosing; waiters get ConflictUnresolvedError."""
        ticket = self._pending.pop(ticket_id, None)
        for future in self._waiters.pop(ticket_id, []):
            if not future.done():
                future.set_exception(ConflictUnresolvedError(f"ticket {ticket_id!r} discarded", ticket_id=ticket_id))
        return ticket is not None

    def __len__(self) -> int:
        return len(self._pending)
