"""Apply-collaborator abstraction for committed change sets.

The host application owns the document buffer; trackedits only hands it a
ConsolidatedChangeSet.  ChangeSink is the backend-agnostic interface the
coordinator depends on, so any editor binding can be plugged in without
changing the coordinator.

**Contract:**
- apply() must either apply the whole change set or raise; partial
  application must not stay visible.
- rollback() undoes a change set previously passed to apply().  It is called
  when a request aborts after apply() was invoked (cancellation, preemption,
  or an apply() that raised half-way).

InMemorySink is the reference implementation used by the CLI and the tests.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from trackedits.conflict.types import ConsolidatedChangeSet
from trackedits.errors import ChangeSinkError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Abstract base class
# ---------------------------------------------------------------------------


class ChangeSink(ABC):
    """Host-side receiver of committed change sets.

    All methods are async so implementations can talk to editor processes,
    language servers or any other async transport.
    """

    @abstractmethod
    async def apply(self, change_set: ConsolidatedChangeSet) -> None:
        """Apply every final edit of *change_set* to the document.

        Args:
            change_set: Non-overlapping final edits in base coordinates; use
                        ``change_set.application_order()`` for in-place edits.

        Raises:
            ChangeSinkError: If the change set could not be applied.
        """

    @abstractmethod
    async def rollback(self, change_set: ConsolidatedChangeSet) -> None:
        """Undo a change set previously passed to apply().

        Must be a no-op when the change set was never (or only partially)
        applied by this sink.
        """


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemorySink(ChangeSink):
    """Keeps document texts in a dict and snapshots them for rollback.

    Args:
        documents: Initial document texts keyed by document id.
    """

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        self.documents: dict[str, str] = dict(documents or {})
        self.applied: list[ConsolidatedChangeSet] = []
        self._snapshots: dict[str, str] = {}

    async def apply(self, change_set: ConsolidatedChangeSet) -> None:
        current = self.documents.get(change_set.document_id, "")
        try:
            updated = change_set.apply_to(current)
        except ValueError as exc:
            raise ChangeSinkError(f"cannot apply {change_set.id} to {change_set.document_id}: {exc}") from exc
        self._snapshots[change_set.id] = current
        self.documents[change_set.document_id] = updated
        self.applied.append(change_set)
        logger.debug("Applied %s to %s (%d edit(s))", change_set.id, change_set.document_id, len(change_set.edits))

    async def rollback(self, change_set: ConsolidatedChangeSet) -> None:
        snapshot = self._snapshots.pop(change_set.id, None)
        if snapshot is None:
            return
        self.documents[change_set.document_id] = snapshot
        self.applied = [c for c in self.applied if c.id != change_set.id]
        logger.info("Rolled back %s on %s", change_set.id, change_set.document_id)
