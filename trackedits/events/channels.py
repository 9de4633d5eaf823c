"""Typed in-process channels for cross-component propagation.

One channel per event category.  Publishing is synchronous: each subscriber
is called in subscription order.  A subscriber that raises is logged and
skipped; it never prevents delivery to the others nor fails the publisher.

The commits channel re-triggers producers, so the hub always builds it as a
GuardedChannel: every ChangeEvent passes the EventLoopGuard before any
subscriber sees it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Generic, TypeVar

from trackedits.config import Settings
from trackedits.events.loop_guard import ChangeEvent, EventLoopGuard

if TYPE_CHECKING:
    from trackedits.conflict.types import ConflictRecord
    from trackedits.consolidation.coordinator import ConsolidationFailure
    from trackedits.models import ClusteringResult, RecordRejection

logger = logging.getLogger(__name__)

T = TypeVar("T")

Handler = Callable[[T], None]


class EventChannel(Generic[T]):
    """Synchronous publish/subscribe channel for one message type."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: list[Callable[[T], None]] = []

    def subscribe(self, handler: Callable[[T], None]) -> Callable[[], None]:
        """Register *handler*; returns a callable that unsubscribes it."""
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def publish(self, message: T) -> int:
        """Deliver *message* to every subscriber.

        Returns:
            Number of subscribers that handled the message without raising.
        """
        delivered = 0
        for handler in list(self._handlers):
            try:
                handler(message)
            except Exception:
                logger.exception("Subscriber %r on channel %s failed", handler, self.name)
                continue
            delivered += 1
        return delivered


class GuardedChannel(EventChannel[ChangeEvent]):
    """Channel whose messages must pass the loop guard before delivery."""

    def __init__(self, name: str, guard: EventLoopGuard) -> None:
        super().__init__(name)
        self.guard = guard

    def publish(self, message: ChangeEvent) -> int:
        decision = self.guard.admit(message)
        if not decision.allowed:
            return 0
        return super().publish(message)


class ChannelHub:
    """The set of channels shared by one session.

    Attributes:
        guard:      Loop guard wrapped around ``commits``.
        clusters:   ClusteringResult per clustering pass.
        conflicts:  Every ConflictRecord the coordinator detects.
        rejections: Records rejected by validation (producer notification).
        failures:   ConsolidationFailure per aborted request.
        commits:    ChangeEvent per committed change set (guarded).
    """

    def __init__(self, settings: Settings | None = None, guard: EventLoopGuard | None = None) -> None:
        self.guard = guard or EventLoopGuard(settings)
        self.clusters: EventChannel[ClusteringResult] = EventChannel("clusters")
        self.conflicts: EventChannel[ConflictRecord] = EventChannel("conflicts")
        self.rejections: EventChannel[RecordRejection] = EventChannel("rejections")
        self.failures: EventChannel[ConsolidationFailure] = EventChannel("failures")
        self.commits = GuardedChannel("commits", self.guard)
