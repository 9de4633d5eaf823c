"""Producer capability descriptors and the per-session producer registry.

A producer is any source of edits: a human typing (MANUAL), an automated
text-generation pipeline (PIPELINE) or a third-party extension (EXTENSION).
Each declares a typed ProducerCapabilities descriptor at registration time;
priority bounds and edit-type support are checked there, not discovered by
duck typing at consolidation time.

Priorities range over ``0..max_priority_level``; a higher value wins.
Registration order is recorded and used as a deterministic tie-breaker
(earlier registration ranks first) by the detector and the merger.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Iterator, Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from trackedits.config import Settings, settings as default_settings
from trackedits.errors import EditValidationError, ProducerRegistrationError
from trackedits.models import EditProposal, EditRecord, EditType, new_id, parse_edit_record

logger = logging.getLogger(__name__)

# Rank reported for producers that are not (or no longer) registered
UNREGISTERED_RANK = 1_000_000


class ProducerKind(str, Enum):
    MANUAL = "manual"
    PIPELINE = "pipeline"
    EXTENSION = "extension"


class ProducerCapabilities(BaseModel):
    """Capabilities a producer declares when it registers.

    Attributes:
        producer_id:          Unique producer identifier.
        kind:                 manual, pipeline or extension.
        priority:             Declared priority, 0..max_priority_level (higher wins).
        supported_edit_types: Edit types this producer may submit.
        exclusive:            Whether its proposals request exclusive document access.
        can_defer:            Whether its losing edits may be deferred instead of rejected.
    """

    model_config = ConfigDict(frozen=True)

    producer_id: str = Field(min_length=1)
    kind: ProducerKind = ProducerKind.MANUAL
    priority: int = Field(default=0, ge=0)
    supported_edit_types: frozenset[EditType] = frozenset(EditType)
    exclusive: bool = False
    can_defer: bool = True


class ProducerRegistry:
    """Registered producers for one editing session."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or default_settings
        self._producers: dict[str, ProducerCapabilities] = {}
        self._ranks: dict[str, int] = {}
        self._next_rank = 0

    def register(self, capabilities: ProducerCapabilities | Mapping[str, Any]) -> ProducerCapabilities:
        """Validate and register a producer.

        Args:
            capabilities: A ProducerCapabilities instance or a mapping of its fields.

        Returns:
            The validated descriptor.

        Raises:
            ProducerRegistrationError: If the descriptor is invalid, its priority
                exceeds ``max_priority_level``, or the id is already registered.
        """
        if not isinstance(capabilities, ProducerCapabilities):
            try:
                capabilities = ProducerCapabilities.model_validate(dict(capabilities))
            except ValidationError as exc:
                raise ProducerRegistrationError(f"invalid producer descriptor: {exc}") from exc

        max_priority = self._settings.max_priority_level
        if capabilities.priority > max_priority:
            raise ProducerRegistrationError(
                f"producer {capabilities.producer_id!r} priority {capabilities.priority} "
                f"exceeds max_priority_level {max_priority}"
            )
        if not capabilities.supported_edit_types:
            raise ProducerRegistrationError(
                f"producer {capabilities.producer_id!r} declares no supported edit types"
            )
        if capabilities.producer_id in self._producers:
            raise ProducerRegistrationError(f"producer {capabilities.producer_id!r} is already registered")

        self._producers[capabilities.producer_id] = capabilities
        self._ranks[capabilities.producer_id] = self._next_rank
        self._next_rank += 1
        logger.debug(
            "Registered producer %s (kind=%s, priority=%d)",
            capabilities.producer_id,
            capabilities.kind.value,
            capabilities.priority,
        )
        return capabilities

    def unregister(self, producer_id: str) -> bool:
        self._ranks.pop(producer_id, None)
        return self._producers.pop(producer_id, None) is not None

    def get(self, producer_id: str) -> ProducerCapabilities | None:
        return self._producers.get(producer_id)

    def rank(self, producer_id: str) -> int:
        """Registration order of *producer_id*; unknown producers sort last."""
        return self._ranks.get(producer_id, UNREGISTERED_RANK)

    def clear(self) -> None:
        self._producers.clear()
        self._ranks.clear()
        self._next_rank = 0

    def __contains__(self, producer_id: object) -> bool:
        return producer_id in self._producers

    def __iter__(self) -> Iterator[ProducerCapabilities]:
        return iter(sorted(self._producers.values(), key=lambda p: self._ranks[p.producer_id]))

    def __len__(self) -> int:
        return len(self._producers)

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def make_proposal(
        self,
        producer_id: str,
        document_id: str,
        edits: Iterable[EditRecord | Mapping[str, Any]],
        *,
        proposal_id: str | None = None,
        submitted_at: float | None = None,
    ) -> EditProposal:
        """Build a validated EditProposal for a registered producer.

        The producer's declared priority, exclusivity and deferral flags are
        copied onto the proposal.

        Raises:
            ProducerRegistrationError: If *producer_id* is not registered.
            EditValidationError: If an edit is malformed, belongs to another
                producer, uses an unsupported edit type, overlaps another edit
                of the same proposal, or depends on an edit of its own producer.
        """
        capabilities = self._producers.get(producer_id)
        if capabilities is None:
            raise ProducerRegistrationError(f"producer {producer_id!r} is not registered")

        records = [parse_edit_record(raw) for raw in edits]
        seen_ids: set[str] = set()
        for record in records:
            if record.producer_id != producer_id:
                raise EditValidationError(
                    f"edit {record.id!r} belongs to producer {record.producer_id!r}, not {producer_id!r}",
                    record_id=record.id,
                    producer_id=producer_id,
                )
            if record.type not in capabilities.supported_edit_types:
                raise EditValidationError(
                    f"producer {producer_id!r} does not support {record.type.value} edits",
                    record_id=record.id,
                    producer_id=producer_id,
                )
            if record.id in seen_ids:
                raise EditValidationError(
                    f"duplicate edit id {record.id!r} in proposal",
                    record_id=record.id,
                    producer_id=producer_id,
                )
            seen_ids.add(record.id)

        for record in records:
            own = seen_ids.intersection(record.depends_on)
            if own:
                raise EditValidationError(
                    f"edit {record.id!r} depends on edits of its own proposal: {sorted(own)}",
                    record_id=record.id,
                    producer_id=producer_id,
                )

        _check_disjoint(records, producer_id)

        return EditProposal(
            proposal_id=proposal_id or new_id("prop"),
            producer_id=producer_id,
            document_id=document_id,
            edits=tuple(records),
            priority=capabilities.priority,
            exclusive=capabilities.exclusive,
            can_defer=capabilities.can_defer,
            submitted_at=time.monotonic() * 1000.0 if submitted_at is None else submitted_at,
        )


def _check_disjoint(records: list[EditRecord], producer_id: str) -> None:
    ordered = sorted(records, key=lambda r: r.target_range)
    for prev, nxt in zip(ordered, ordered[1:]):
        p_start, p_end = prev.target_range
        n_start, n_end = nxt.target_range
        same_point = p_start == p_end == n_start == n_end
        if n_start < p_end or same_point:
            raise EditValidationError(
                f"edits {prev.id!r} and {nxt.id!r} of one proposal overlap",
                record_id=nxt.id,
                producer_id=producer_id,
            )
