"""
Pending Update Queue

Records which buckets have unflushed activity. This is the only mutable
structure shared between ingestion (many concurrent callers) and the flush
scheduler; every access goes through one lock and never blocks on I/O.

Bucket lifecycle:

    UNSEEN -> QUEUED -> FLUSHING -> PERSISTED (removed) -> QUEUED -> ...
                           |
                           +-> QUEUED (failed, retried) -> DEAD_LETTER

A bucket touched by a new event while it is flushing goes back to QUEUED
instead of being removed, so the event is never lost to the in-flight flush.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog

from .documents import aggregate_document_id
from .events import SalesEvent
from .exceptions import BackpressureError
from .periods import Granularity, PeriodKey, resolve_all

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BucketIdentity:
    """One (seller[, product], granularity, period) aggregate cell"""
    seller_id: str
    product_id: Optional[str]
    period: PeriodKey

    @property
    def granularity(self) -> Granularity:
        return self.period.granularity

    @property
    def period_key(self) -> str:
        return self.period.key

    @property
    def is_seller_level(self) -> bool:
        return self.product_id is None

    @property
    def group_key(self) -> Tuple[str, Granularity, str]:
        """Identities sharing this key are served by one history read"""
        return (self.seller_id, self.period.granularity, self.period.key)

    @property
    def document_id(self) -> str:
        return aggregate_document_id(self.seller_id, self.product_id, self.granularity, self.period_key)

    def __str__(self) -> str:
        product = self.product_id or "*"
        return f"{self.seller_id}/{product}/{self.granularity.value}/{self.period_key}"


class BucketState(str, Enum):
    """Queue-side bucket states; UNSEEN and PERSISTED buckets are simply absent"""
    QUEUED = "queued"
    FLUSHING = "flushing"
    DEAD_LETTER = "dead_letter"


@dataclass
class PendingBucket:
    """Queue entry for one bucket identity"""
    identity: BucketIdentity
    first_queued_at: datetime
    last_queued_at: datetime
    state: BucketState = BucketState.QUEUED
    event_ids: Set[str] = field(default_factory=set)
    in_flight_event_ids: Set[str] = field(default_factory=set)
    attempts: int = 0
    permanent_failures: int = 0
    next_eligible_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class DeadLetter:
    """A bucket whose computation kept failing, parked for operator inspection"""
    identity: BucketIdentity
    attempts: int
    last_error: Optional[str]
    dead_lettered_at: datetime


def bucket_identities(event: SalesEvent) -> List[BucketIdentity]:
    """Every bucket an event touches: seller-level and, with a product, product-level, per granularity"""
    identities = []
    for period in resolve_all(event.event_timestamp):
        identities.append(BucketIdentity(event.seller_id, None, period))
        if event.product_id is not None:
            identities.append(BucketIdentity(event.seller_id, event.product_id, period))
    return identities


class PendingUpdateQueue:
    """
    Lock-guarded map of buckets awaiting a flush.

    Example:
        queue = PendingUpdateQueue(max_pending_buckets=10_000)
        queue.enqueue(event)
        batch = queue.select_batch(50)
        queue.mark_persisted(batch[0])
    """

    def __init__(
        self,
        max_pending_buckets: int = 100_000,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.max_pending_buckets = max_pending_buckets
        self._clock = clock
        self._lock = threading.Lock()
        # Insertion order doubles as flush priority: oldest first
        self._pending: Dict[BucketIdentity, PendingBucket] = {}
        self._dead_letters: Dict[BucketIdentity, DeadLetter] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def enqueue(self, event: SalesEvent) -> List[BucketIdentity]:
        """
        Record that ``event`` touched its buckets.

        All-or-nothing: when the new identities would push the queue past its
        high-water mark, nothing is recorded.

        Raises:
            BackpressureError: If the queue is full
        """
        identities = bucket_identities(event)

        with self._lock:
            new_count = sum(1 for identity in identities if identity not in self._pending)
            if new_count and len(self._pending) + new_count > self.max_pending_buckets:
                raise BackpressureError(len(self._pending), self.max_pending_buckets)

            now = self._clock()
            for identity in identities:
                entry = self._pending.get(identity)
                if entry is None:
                    # A new event revives a dead-lettered bucket
                    self._dead_letters.pop(identity, None)
                    entry = PendingBucket(identity=identity, first_queued_at=now, last_queued_at=now)
                    self._pending[identity] = entry
                entry.event_ids.add(event.event_id)
                entry.last_queued_at = now

        return identities

    def select_batch(self, limit: int, now: Optional[datetime] = None) -> List[BucketIdentity]:
        """
        Pick up to ``limit`` eligible buckets, oldest first, and mark them FLUSHING.

        Buckets backing off after a failure are skipped until their next
        eligible instant.
        """
        now = now or self._clock()
        selected: List[BucketIdentity] = []

        with self._lock:
            for identity, entry in self._pending.items():
                if len(selected) >= limit:
                    break
                if entry.state is not BucketState.QUEUED:
                    continue
                if entry.next_eligible_at is not None and entry.next_eligible_at > now:
                    continue
                entry.state = BucketState.FLUSHING
                entry.in_flight_event_ids = entry.event_ids
                entry.event_ids = set()
                selected.append(identity)

        return selected

    def mark_persisted(self, identity: BucketIdentity) -> Optional[BucketState]:
        """
        Complete a successful flush.

        Returns:
            None if the bucket left the queue, QUEUED if new events arrived
            while it was flushing
        """
        with self._lock:
            entry = self._pending.get(identity)
            if entry is None:
                return None
            if entry.event_ids:
                entry.state = BucketState.QUEUED
                entry.in_flight_event_ids = set()
                entry.attempts = 0
                entry.permanent_failures = 0
                entry.next_eligible_at = None
                entry.last_error = None
                return BucketState.QUEUED
            del self._pending[identity]
            return None

    def mark_failed(
        self,
        identity: BucketIdentity,
        error: str,
        permanent: bool = False,
        max_attempts: int = 5,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 300.0,
        now: Optional[datetime] = None,
    ) -> Optional[BucketState]:
        """
        Return a failed bucket to the queue.

        Transient failures are retried on the next tick. Permanent failures
        back off exponentially and are dead-lettered after ``max_attempts``.

        Returns:
            The bucket's new state, or None if it is no longer queued
        """
        now = now or self._clock()

        with self._lock:
            entry = self._pending.get(identity)
            if entry is None:
                return None

            entry.attempts += 1
            entry.last_error = error
            entry.event_ids |= entry.in_flight_event_ids
            entry.in_flight_event_ids = set()

            if not permanent:
                entry.state = BucketState.QUEUED
                entry.next_eligible_at = None
                return BucketState.QUEUED

            entry.permanent_failures += 1
            if entry.permanent_failures >= max_attempts:
                del self._pending[identity]
                self._dead_letters[identity] = DeadLetter(
                    identity=identity,
                    attempts=entry.attempts,
                    last_error=error,
                    dead_lettered_at=now,
                )
                logger.error(
                    "Bucket moved to dead-letter list",
                    bucket=str(identity),
                    attempts=entry.attempts,
                    error=error,
                )
                return BucketState.DEAD_LETTER

            delay = min(backoff_base_seconds * (2 ** (entry.permanent_failures - 1)), backoff_max_seconds)
            entry.state = BucketState.QUEUED
            entry.next_eligible_at = now + timedelta(seconds=delay)
            return BucketState.QUEUED

    def dead_letters(self) -> List[DeadLetter]:
        with self._lock:
            return list(self._dead_letters.values())

    def requeue_dead_letters(self) -> int:
        """Move every dead-lettered bucket back to the queue with a fresh retry budget"""
        now = self._clock()
        with self._lock:
            revived = list(self._dead_letters)
            for identity in revived:
                self._pending.setdefault(
                    identity,
                    PendingBucket(identity=identity, first_queued_at=now, last_queued_at=now),
                )
            self._dead_letters.clear()
        if revived:
            logger.info("Dead-lettered buckets requeued", count=len(revived))
        return len(revived)

    def state_of(self, identity: BucketIdentity) -> Optional[BucketState]:
        with self._lock:
            entry = self._pending.get(identity)
            if entry is not None:
                return entry.state
            if identity in self._dead_letters:
                return BucketState.DEAD_LETTER
            return None

    def pending_identities(self) -> List[BucketIdentity]:
        with self._lock:
            return list(self._pending)

    def snapshot(self) -> Dict[str, Any]:
        """Queue statistics"""
        with self._lock:
            flushing = sum(1 for e in self._pending.values() if e.state is BucketState.FLUSHING)
            return {
                "pending_buckets": len(self._pending),
                "flushing_buckets": flushing,
                "dead_letter_buckets": len(self._dead_letters),
                "max_pending_buckets": self.max_pending_buckets,
            }
