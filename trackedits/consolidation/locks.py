"""Per-document locks with expiry and prioritized preemption.

Rules enforced by LockManager:
  - at most one exclusive holder per document at any instant; shared locks
    only coexist with other shared locks
  - every lock expires ``lock_ttl_ms`` after acquisition
  - a contender may take over a lock only if that lock has expired, or if it
    is preemptible, held at a strictly lower priority, and its holder is not
    in the middle of applying a change set
  - acquisition waits at most ``lock_timeout_ms``, retrying with exponential
    backoff from ``lock_backoff_initial_ms`` up to ``lock_backoff_max_ms``

Every check-and-grant happens synchronously between two awaits, so it is
atomic with respect to other asyncio tasks.  A preempted holder finds
``lock.revoked`` set and must abort.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from trackedits.config import Settings, settings as default_settings
from trackedits.errors import LockPreemptedError, LockTimeoutError
from trackedits.models import new_id

logger = logging.getLogger(__name__)


class LockMode(str, Enum):
    EXCLUSIVE = "exclusive"
    SHARED = "shared"


@dataclass
class DocumentLock:
    """A granted lock.  Times are monotonic milliseconds."""

    document_id: str
    producer_id: str
    request_id: str
    mode: LockMode
    priority: int
    acquired_at: float
    expires_at: float
    preemptible: bool
    lock_id: str = field(default_factory=lambda: new_id("lock"))
    committing: bool = False
    revoked: bool = False
    revoked_by: str | None = None

    @property
    def exclusive(self) -> bool:
        return self.mode is LockMode.EXCLUSIVE

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class LockGrant:
    lock: DocumentLock
    preempted: tuple[DocumentLock, ...] = ()
    waited_ms: float = 0.0


class LockManager:
    """Grants document locks to consolidation requests.

    Args:
        settings: Timeout, TTL, backoff and priority options.
        clock:    Monotonic clock in seconds; injectable for tests.
        sleep:    Coroutine used between retries; injectable for tests.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or default_settings
        self._clock = clock
        self._sleep = sleep
        self._holders: dict[str, list[DocumentLock]] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    async def acquire(
        self,
        document_id: str,
        *,
        producer_id: str,
        request_id: str,
        priority: int,
        mode: LockMode = LockMode.EXCLUSIVE,
        preemptible: bool | None = None,
        timeout_ms: float | None = None,
    ) -> LockGrant:
        """Wait for a lock on *document_id*.

        Args:
            producer_id: Producer the request acts for.
            request_id:  Consolidation request id, recorded on the lock.
            priority:    Request priority (higher wins preemption).
            mode:        EXCLUSIVE to mutate, SHARED for read-only analysis.
            preemptible: Whether a higher priority may take the lock over;
                         defaults to ``priority < max_priority_level``.
            timeout_ms:  Overrides ``lock_timeout_ms``.

        Returns:
            LockGrant with the new lock and any lock it preempted.

        Raises:
            LockTimeoutError: If the lock could not be granted in time.
        """
        timeout = self._settings.lock_timeout_ms if timeout_ms is None else timeout_ms
        if preemptible is None:
            preemptible = priority < self._settings.max_priority_level
        started = self._now_ms()
        delay = self._settings.lock_backoff_initial_ms

        while True:
            grant = self.try_acquire(
                document_id,
                producer_id=producer_id,
                request_id=request_id,
                priority=priority,
                mode=mode,
                preemptible=preemptible,
            )
            waited = self._now_ms() - started
            if grant is not None:
                return LockGrant(grant.lock, grant.preempted, waited)
            if waited >= timeout:
                logger.warning(
                    "Lock timeout on %s for request %s after %.0f ms", document_id, request_id, waited
                )
                raise LockTimeoutError(document_id, waited)
            await self._sleep(min(delay, timeout - waited) / 1000.0)
            delay = min(delay * 2, self._settings.lock_backoff_max_ms)

    def try_acquire(
        self,
        document_id: str,
        *,
        producer_id: str,
        request_id: str,
        priority: int,
        mode: LockMode = LockMode.EXCLUSIVE,
        preemptible: bool = True,
    ) -> LockGrant | None:
        """Grant immediately if possible, preempting where the rules allow."""
        now = self._now_ms()
        holders = self._holders.setdefault(document_id, [])

        blocking = [h for h in holders if mode is LockMode.EXCLUSIVE or h.exclusive]
        if any(not self._can_preempt(h, priority, now) for h in blocking):
            return None

        for holder in blocking:
            self._revoke(holder, request_id, now)

        lock = DocumentLock(
            document_id=document_id,
            producer_id=producer_id,
            request_id=request_id,
            mode=mode,
            priority=priority,
            acquired_at=now,
            expires_at=now + self._settings.lock_ttl_ms,
            preemptible=preemptible,
        )
        holders.append(lock)
        logger.debug("Lock %s (%s) on %s granted to %s", lock.lock_id, mode.value, document_id, request_id)
        return LockGrant(lock, tuple(blocking))

    def _can_preempt(self, holder: DocumentLock, priority: int, now: float) -> bool:
        if holder.expired(now):
            return True
        return holder.preemptible and priority > holder.priority and not holder.committing

    def _revoke(self, holder: DocumentLock, by_request: str, now: float) -> None:
        holder.revoked = True
        holder.revoked_by = by_request
        self._holders[holder.document_id].remove(holder)
        reason = "expired" if holder.expired(now) else "preempted"
        logger.warning(
            "Lock %s on %s held by %s %s by request %s",
            holder.lock_id,
            holder.document_id,
            holder.request_id,
            reason,
            by_request,
        )

    def release(self, lock: DocumentLock) -> bool:
        """Release *lock*.  Returns False if it was no longer held."""
        holders = self._holders.get(lock.document_id, [])
        if lock not in holders:
            return False
        holders.remove(lock)
        if not holders:
            self._holders.pop(lock.document_id, None)
        logger.debug("Lock %s on %s released", lock.lock_id, lock.document_id)
        return True

    def holders(self, document_id: str) -> list[DocumentLock]:
        """Live (unexpired) locks on *document_id*."""
        now = self._now_ms()
        return [h for h in self._holders.get(document_id, []) if not h.expired(now)]

    def holder(self, document_id: str) -> DocumentLock | None:
        """The exclusive holder of *document_id*, if any."""
        return next((h for h in self.holders(document_id) if h.exclusive), None)

    def ensure_valid(self, lock: DocumentLock) -> None:
        """Raise LockPreemptedError if *lock* was revoked or has expired."""
        if lock.revoked:
            raise LockPreemptedError(f"lock on {lock.document_id!r} was preempted by {lock.revoked_by}")
        if lock.expired(self._now_ms()):
            raise LockPreemptedError(f"lock on {lock.document_id!r} expired")

    def begin_commit(self, lock: DocumentLock) -> None:
        """Mark *lock* as applying a change set; it can no longer be preempted until expiry."""
        self.ensure_valid(lock)
        lock.committing = True
