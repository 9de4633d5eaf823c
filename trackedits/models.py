"""Edit records, clusters and proposals shared by every trackedits component.

EditRecord is the input boundary: the host's editor-integration layer hands
us records as mappings (camelCase wire names such as ``from``, ``removedText``
and ``producerId`` are accepted) and they are validated with Pydantic on
entry.  Everything derived from records (clusters, proposals) is a frozen
dataclass, since it is built by trackedits itself and never re-validated.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from trackedits.errors import EditValidationError


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Edit records
# ---------------------------------------------------------------------------


class EditType(str, Enum):
    """Granular edit operations reported by the editor."""

    INSERT = "insert"
    DELETE = "delete"
    REPLACE = "replace"


class EditRecord(BaseModel):
    """One immutable low-level edit.

    The range is half-open ``[start, end)``.  For inserts the editor may report
    either the empty range at the insertion point or the span of the inserted
    text; ``target_range`` normalises both to the empty range at ``start``.

    An edit listing ``depends_on`` is expressed in the coordinates of the
    document after those edits are applied; all other edits use base
    document coordinates.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(min_length=1)
    timestamp: float = Field(ge=0, description="Monotonic timestamp in milliseconds")
    type: EditType
    start: int = Field(ge=0, validation_alias=AliasChoices("start", "from"))
    end: int = Field(ge=0, validation_alias=AliasChoices("end", "to"))
    text: str = ""
    removed_text: str = Field(default="", validation_alias=AliasChoices("removed_text", "removedText"))
    producer_id: str = Field(min_length=1, validation_alias=AliasChoices("producer_id", "producerId"))
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    depends_on: tuple[str, ...] = Field(default=(), validation_alias=AliasChoices("depends_on", "dependsOn"))

    @field_validator("text", "removed_text", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @model_validator(mode="after")
    def _check_range(self) -> "EditRecord":
        if self.start > self.end:
            raise ValueError(f"from > to ({self.start} > {self.end})")
        if self.id in self.depends_on:
            raise ValueError("edit cannot depend on itself")
        return self

    @property
    def target_range(self) -> tuple[int, int]:
        """Base-document range this edit replaces."""
        if self.type is EditType.INSERT:
            return (self.start, self.start)
        return (self.start, self.end)

    @property
    def replacement(self) -> str:
        """Text that ends up in the document in place of ``target_range``."""
        return "" if self.type is EditType.DELETE else self.text


@dataclass(frozen=True)
class RecordRejection:
    """A record excluded from processing because it failed validation."""

    index: int
    error: EditValidationError

    @property
    def record_id(self) -> str | None:
        return self.error.record_id

    @property
    def producer_id(self) -> str | None:
        return self.error.producer_id


def parse_edit_record(raw: EditRecord | Mapping[str, Any]) -> EditRecord:
    """Validate a host-supplied record.

    Args:
        raw: An EditRecord (returned unchanged) or a mapping using either the
             wire names (``from``, ``to``, ``removedText``...) or field names.

    Returns:
        The validated, immutable EditRecord.

    Raises:
        EditValidationError: If the record is malformed (``from > to``, missing
            range, negative offsets, confidence outside [0, 1], ...).
    """
    if isinstance(raw, EditRecord):
        return raw
    if not isinstance(raw, Mapping):
        raise EditValidationError(f"edit record must be a mapping, got {type(raw).__name__}")

    try:
        return EditRecord.model_validate(dict(raw))
    except ValidationError as exc:
        record_id = raw.get("id")
        producer_id = raw.get("producer_id", raw.get("producerId"))
        errors = exc.errors(include_url=False, include_context=False)
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "record" for err in errors)
        raise EditValidationError(
            f"invalid edit record {record_id!r}: {fields}",
            record_id=str(record_id) if record_id is not None else None,
            producer_id=str(producer_id) if producer_id is not None else None,
            errors=errors,
        ) from exc


# ---------------------------------------------------------------------------
# Clusters
# ---------------------------------------------------------------------------


class ClusterType(str, Enum):
    CONSECUTIVE_TYPING = "consecutive_typing"
    WORD_REPLACEMENT = "word_replacement"
    DELETION = "deletion"
    MIXED = "mixed"


@dataclass(frozen=True)
class ClusterMetadata:
    original_word: str | None = None
    new_word: str | None = None
    position: int | None = None


@dataclass(frozen=True)
class EditCluster:
    """A time-bounded group of edits presented and handled as one unit.

    The cluster owns its member edits: they are held in an immutable tuple,
    sorted ascending by timestamp.
    """

    id: str
    type: ClusterType
    edits: tuple[EditRecord, ...]
    start_time: float
    end_time: float
    word_count: int
    character_count: int
    metadata: ClusterMetadata = field(default_factory=ClusterMetadata)

    @property
    def edit_ids(self) -> tuple[str, ...]:
        return tuple(edit.id for edit in self.edits)


@dataclass(frozen=True)
class ClusteringResult:
    """Output of one clustering pass, also published on the clusters channel.

    ``skipped_reason`` is set when the pass did not run (feature gate off), so
    an empty result is never ambiguous.
    """

    document_id: str | None
    clusters: tuple[EditCluster, ...] = ()
    rejected: tuple[RecordRejection, ...] = ()
    skipped_reason: str | None = None


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EditProposal:
    """One producer's concurrently proposed edit set for one document.

    Built by ProducerRegistry.make_proposal(), which validates the edits
    against the producer's declared capabilities.
    """

    proposal_id: str
    producer_id: str
    document_id: str
    edits: tuple[EditRecord, ...]
    priority: int
    exclusive: bool = False
    can_defer: bool = True
    submitted_at: float = 0.0
