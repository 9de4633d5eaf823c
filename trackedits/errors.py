"""Typed failures raised by trackedits.

Every failure is scoped to a single record, region, request or document.
Nothing here is globally fatal; callers decide whether to retry using the
``retryable`` flag.
"""

from __future__ import annotations

from typing import Any


class TrackEditsError(Exception):
    """Base class for all trackedits failures."""

    retryable: bool = False


class EditValidationError(TrackEditsError, ValueError):
    """A malformed edit record or proposal was rejected.

    Attributes:
        record_id:   Id of the offending record, when one could be read.
        producer_id: Producer that submitted it, when one could be read.
        errors:      Pydantic-style error dicts (``loc``, ``msg``, ``type``).
    """

    def __init__(
        self,
        message: str,
        *,
        record_id: str | None = None,
        producer_id: str | None = None,
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.record_id = record_id
        self.producer_id = producer_id
        self.errors = errors or []


class ProducerRegistrationError(TrackEditsError):
    """A producer capability descriptor was invalid or already registered."""


class ConcurrentClusteringError(TrackEditsError):
    """Clustering was requested for a document that is already being clustered."""


class ConflictUnresolvedError(TrackEditsError):
    """A conflict needs manual resolution; the affected region is withheld."""

    def __init__(self, message: str, *, ticket_id: str | None = None) -> None:
        super().__init__(message)
        self.ticket_id = ticket_id


class LockTimeoutError(TrackEditsError):
    """A document lock could not be acquired within the bounded wait."""

    retryable = True

    def __init__(self, document_id: str, waited_ms: float) -> None:
        super().__init__(f"lock on {document_id!r} not acquired after {waited_ms:.0f} ms")
        self.document_id = document_id
        self.waited_ms = waited_ms


class LockPreemptedError(TrackEditsError):
    """The lock backing a request was taken over by a higher-priority request."""

    retryable = True


class RequestCancelledError(TrackEditsError):
    """A consolidation request was cancelled by its caller."""


class ChangeSinkError(TrackEditsError):
    """The host apply collaborator failed to apply a change set."""
