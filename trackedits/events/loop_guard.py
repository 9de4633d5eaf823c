"""Feedback-loop guard for propagated change events.

A committed change can make a producer propose a new edit (an automated
reformatter reacting to its own output, two extensions correcting each
other...).  Every propagated ChangeEvent carries a correlation id shared by
the whole chain and a hop counter incremented on each re-propagation.

The guard quarantines a correlation chain when:
  HOP_LIMIT    the hop counter exceeds ``loop_guard_max_hops``
  OSCILLATION  the same producer re-emits into the same chain at least
               ``loop_guard_oscillation_threshold`` times inside the sliding
               ``loop_guard_window_ms`` window

Once quarantined, every further event of that chain is refused but still
logged and recorded for diagnosis.  Other chains are unaffected; detection is
a warning, never an exception.

The sliding window follows the same prune-then-count shape as a ZSET burst
detector: timestamps older than the window are dropped before counting.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from trackedits.config import Settings, settings as default_settings
from trackedits.models import new_id

logger = logging.getLogger(__name__)

# Diagnostic history kept per guard
_MAX_DETECTIONS = 1000


@dataclass(frozen=True)
class ChangeEvent:
    """A propagated change, carried on the commits channel.

    Attributes:
        event_id:       Unique id of this hop.
        correlation_id: Shared by every event of one logical chain.
        hop:            0 for the root event, +1 per re-propagation.
        document_id:    Document the change applies to.
        producer_id:    Producer that caused this hop.
        payload:        Channel-specific content (a ConsolidatedChangeSet for commits).
        emitted_at:     Monotonic emission time in milliseconds.
    """

    event_id: str
    correlation_id: str
    hop: int
    document_id: str
    producer_id: str
    payload: Any = None
    emitted_at: float = 0.0

    @classmethod
    def root(cls, document_id: str, producer_id: str, payload: Any = None, *, emitted_at: float = 0.0) -> "ChangeEvent":
        return cls(
            event_id=new_id("evt"),
            correlation_id=new_id("corr"),
            hop=0,
            document_id=document_id,
            producer_id=producer_id,
            payload=payload,
            emitted_at=emitted_at,
        )

    def next_hop(self, producer_id: str, payload: Any = None, *, emitted_at: float | None = None) -> "ChangeEvent":
        """Derive the event a producer emits in reaction to this one."""
        return replace(
            self,
            event_id=new_id("evt"),
            hop=self.hop + 1,
            producer_id=producer_id,
            payload=payload,
            emitted_at=self.emitted_at if emitted_at is None else emitted_at,
        )


class LoopReason(str, Enum):
    HOP_LIMIT = "hop_limit"
    OSCILLATION = "oscillation"
    QUARANTINED = "quarantined"


@dataclass(frozen=True)
class LoopDetection:
    """Diagnostic record of a refused event."""

    correlation_id: str
    event_id: str
    producer_id: str
    document_id: str
    hop: int
    reason: LoopReason
    detected_at: float


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    reason: LoopReason | None = None
    detection: LoopDetection | None = None


_ALLOW = GuardDecision(allowed=True)


@dataclass
class _ChainWindow:
    # (timestamp_ms, producer_id) per admitted event, oldest first
    entries: deque = field(default_factory=deque)


class EventLoopGuard:
    """Admission control for events that can re-trigger producers.

    Args:
        settings: Source of ``loop_guard_*`` options; module settings by default.
        clock:    Monotonic clock in seconds; injectable for tests.
    """

    def __init__(self, settings: Settings | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._settings = settings or default_settings
        self._clock = clock
        self._windows: dict[str, _ChainWindow] = {}
        self._quarantined: dict[str, LoopDetection] = {}
        self.detections: deque[LoopDetection] = deque(maxlen=_MAX_DETECTIONS)

    @property
    def max_hops(self) -> int:
        return self._settings.loop_guard_max_hops

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def admit(self, event: ChangeEvent) -> GuardDecision:
        """Decide whether *event* may propagate.

        Returns:
            An allowing decision, or a refusing one carrying the LoopDetection
            that was recorded.
        """
        now = self._now_ms()

        if event.correlation_id in self._quarantined:
            return self._refuse(event, LoopReason.QUARANTINED, now)

        if event.hop > self._settings.loop_guard_max_hops:
            return self._quarantine(event, LoopReason.HOP_LIMIT, now)

        window_start = now - self._settings.loop_guard_window_ms
        self._sweep(window_start)

        # re-inserted so _windows stays ordered by last activity
        window = self._windows.pop(event.correlation_id, None) or _ChainWindow()
        while window.entries and window.entries[0][0] < window_start:
            window.entries.popleft()
        window.entries.append((now, event.producer_id))
        self._windows[event.correlation_id] = window

        repeats = sum(1 for _, producer in window.entries if producer == event.producer_id)
        if repeats >= self._settings.loop_guard_oscillation_threshold:
            return self._quarantine(event, LoopReason.OSCILLATION, now)

        return _ALLOW

    def _sweep(self, window_start: float) -> None:
        """Forget chains with no admitted event inside the window."""
        for correlation_id, window in list(self._windows.items()):
            if window.entries and window.entries[-1][0] >= window_start:
                break
            del self._windows[correlation_id]

    def _quarantine(self, event: ChangeEvent, reason: LoopReason, now: float) -> GuardDecision:
        decision = self._refuse(event, reason, now)
        self._quarantined[event.correlation_id] = decision.detection  # type: ignore[assignment]
        self._windows.pop(event.correlation_id, None)
        logger.warning(
            "Loop guard: quarantined chain %s (%s) at hop %d from producer %s on %s",
            event.correlation_id,
            reason.value,
            event.hop,
            event.producer_id,
            event.document_id,
        )
        return decision

    def _refuse(self, event: ChangeEvent, reason: LoopReason, now: float) -> GuardDecision:
        detection = LoopDetection(
            correlation_id=event.correlation_id,
            event_id=event.event_id,
            producer_id=event.producer_id,
            document_id=event.document_id,
            hop=event.hop,
            reason=reason,
            detected_at=now,
        )
        self.detections.append(detection)
        if reason is LoopReason.QUARANTINED:
            logger.warning(
                "Loop guard: dropped event %s of quarantined chain %s (hop %d)",
                event.event_id,
                event.correlation_id,
                event.hop,
            )
        return GuardDecision(allowed=False, reason=reason, detection=detection)

    @property
    def tracked_chains(self) -> int:
        """Number of chains with a live oscillation window."""
        return len(self._windows)

    def is_quarantined(self, correlation_id: str) -> bool:
        return correlation_id in self._quarantined

    def quarantined(self) -> dict[str, LoopDetection]:
        """Quarantined chains mapped to the detection that triggered them."""
        return dict(self._quarantined)

    def release(self, correlation_id: str) -> bool:
        """Re-enable propagation for a chain.  Returns False if it was not quarantined."""
        self._windows.pop(correlation_id, None)
        return self._quarantined.pop(correlation_id, None) is not None

    def reset(self) -> None:
        self._windows.clear()
        self._quarantined.clear()
        self.detections.clear()
