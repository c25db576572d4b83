"""
Unit Tests - Pending Update Queue
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from sales_aggregation.aggregation.exceptions import BackpressureError
from sales_aggregation.aggregation.periods import Granularity
from sales_aggregation.aggregation.queue import (
    BucketIdentity,
    BucketState,
    PendingUpdateQueue,
    bucket_identities,
)


@pytest.fixture
def queue(clock) -> PendingUpdateQueue:
    return PendingUpdateQueue(max_pending_buckets=100, clock=clock)


def fail_permanently(queue, identity, clock, max_attempts=3):
    return queue.mark_failed(
        identity,
        "boom",
        permanent=True,
        max_attempts=max_attempts,
        backoff_base_seconds=1.0,
        backoff_max_seconds=8.0,
        now=clock(),
    )


class TestBucketIdentities:
    """Tests for bucket_identities"""

    def test_product_event_touches_eight_buckets(self, make_event):
        """Test seller and product buckets at every granularity"""
        identities = bucket_identities(make_event())

        assert len(identities) == 8
        assert sum(1 for i in identities if i.is_seller_level) == 4
        assert {i.granularity for i in identities} == set(Granularity)

    def test_productless_event_touches_four_buckets(self, make_event):
        """Test seller-only events skip product buckets"""
        identities = bucket_identities(make_event(product_id=None))

        assert len(identities) == 4
        assert all(i.is_seller_level for i in identities)

    def test_document_id_is_stable(self, make_event):
        """Test equal identities share a document id"""
        first = bucket_identities(make_event())[0]
        second = bucket_identities(make_event())[0]

        assert first == second
        assert first.document_id == second.document_id
        assert str(first) == "seller-1/*/daily/2025-03-15"


class TestEnqueue:
    """Tests for PendingUpdateQueue.enqueue"""

    def test_enqueue_is_idempotent_per_bucket(self, queue, make_event):
        """Test repeated events on the same buckets do not grow the queue"""
        queue.enqueue(make_event())
        queue.enqueue(make_event())

        assert len(queue) == 8

    def test_backpressure_is_all_or_nothing(self, clock, make_event):
        """Test a full queue rejects the whole event"""
        queue = PendingUpdateQueue(max_pending_buckets=8, clock=clock)
        queue.enqueue(make_event())

        # Same buckets: accepted without growth
        queue.enqueue(make_event())

        with pytest.raises(BackpressureError) as exc_info:
            queue.enqueue(make_event(product_id="prod-2"))

        assert exc_info.value.retryable
        assert exc_info.value.limit == 8
        assert len(queue) == 8

    def test_snapshot(self, queue, make_event):
        """Test queue statistics"""
        queue.enqueue(make_event())
        queue.select_batch(3)

        stats = queue.snapshot()

        assert stats["pending_buckets"] == 8
        assert stats["flushing_buckets"] == 3
        assert stats["dead_letter_buckets"] == 0
        assert stats["max_pending_buckets"] == 100


class TestSelectBatch:
    """Tests for PendingUpdateQueue.select_batch"""

    def test_limit_and_oldest_first(self, queue, make_event):
        """Test batches respect the limit in insertion order"""
        first = queue.enqueue(make_event(seller_id="seller-a"))
        queue.enqueue(make_event(seller_id="seller-b"))

        batch = queue.select_batch(8)

        assert batch == first
        assert all(queue.state_of(i) is BucketState.FLUSHING for i in batch)

    def test_flushing_buckets_not_reselected(self, queue, make_event):
        """Test in-flight buckets are skipped by the next selection"""
        queue.enqueue(make_event())

        assert len(queue.select_batch(5)) == 5
        assert len(queue.select_batch(5)) == 3
        assert queue.select_batch(5) == []


class TestMarkPersisted:
    """Tests for PendingUpdateQueue.mark_persisted"""

    def test_persisted_bucket_removed(self, queue, make_event):
        """Test a flushed bucket leaves the queue"""
        identity = queue.enqueue(make_event())[0]
        queue.select_batch(1)

        assert queue.mark_persisted(identity) is None
        assert queue.state_of(identity) is None
        assert len(queue) == 7

    def test_event_during_flush_requeues(self, queue, make_event):
        """Test a bucket touched while flushing stays queued"""
        identity = queue.enqueue(make_event())[0]
        queue.select_batch(1)
        queue.enqueue(make_event())

        assert queue.mark_persisted(identity) is BucketState.QUEUED
        assert identity in queue.select_batch(1)


class TestMarkFailed:
    """Tests for PendingUpdateQueue.mark_failed"""

    def test_transient_failure_retried_next_tick(self, queue, make_event):
        """Test transient failures are immediately eligible again"""
        identity = queue.enqueue(make_event())[0]
        queue.select_batch(1)

        state = queue.mark_failed(identity, "timeout", permanent=False)

        assert state is BucketState.QUEUED
        assert queue.select_batch(1) == [identity]

    def test_transient_failures_never_dead_letter(self, queue, make_event):
        """Test transient failures have no retry cap"""
        identity = queue.enqueue(make_event())[0]
        for _ in range(10):
            queue.select_batch(1)
            queue.mark_failed(identity, "timeout", permanent=False, max_attempts=3)

        assert queue.state_of(identity) is BucketState.QUEUED

    def test_permanent_failure_backs_off(self, queue, clock, make_event):
        """Test exponential backoff between permanent failures"""
        identity = queue.enqueue(make_event())[0]

        queue.select_batch(1)
        fail_permanently(queue, identity, clock)
        assert identity not in queue.select_batch(8)

        clock.advance(seconds=1)
        assert queue.select_batch(1, now=clock()) == [identity]

        fail_permanently(queue, identity, clock)
        clock.advance(seconds=1)
        assert identity not in queue.select_batch(8, now=clock())
        clock.advance(seconds=1)
        assert queue.select_batch(1, now=clock()) == [identity]

    def test_dead_letter_after_max_attempts(self, queue, clock, make_event):
        """Test repeated permanent failures park the bucket"""
        identity = queue.enqueue(make_event())[0]

        states = []
        for _ in range(3):
            clock.advance(seconds=60)
            assert identity in queue.select_batch(8, now=clock())
            states.append(fail_permanently(queue, identity, clock))

        assert states[-1] is BucketState.DEAD_LETTER
        assert queue.state_of(identity) is BucketState.DEAD_LETTER
        dead = queue.dead_letters()
        assert [d.identity for d in dead] == [identity]
        assert dead[0].last_error == "boom"

    def test_new_event_revives_dead_letter(self, queue, clock, make_event):
        """Test dead-lettered buckets are not terminal"""
        identity = queue.enqueue(make_event())[0]
        for _ in range(3):
            clock.advance(seconds=60)
            queue.select_batch(8, now=clock())
            fail_permanently(queue, identity, clock)

        queue.enqueue(make_event())

        assert queue.state_of(identity) is BucketState.QUEUED
        assert queue.dead_letters() == []

    def test_requeue_dead_letters(self, queue, clock, make_event):
        """Test operators can return dead letters to the queue"""
        identity = queue.enqueue(make_event())[0]
        for _ in range(3):
            clock.advance(seconds=60)
            queue.select_batch(8, now=clock())
            fail_permanently(queue, identity, clock)

        assert queue.requeue_dead_letters() == 1
        assert queue.state_of(identity) is BucketState.QUEUED

    def test_unknown_identity_ignored(self, queue, make_event):
        """Test failures of buckets no longer queued are ignored"""
        identity = BucketIdentity("ghost", None, bucket_identities(make_event())[0].period)

        assert queue.mark_failed(identity, "boom") is None


class TestConcurrentIngest:
    """Tests for enqueueing from many threads"""

    def test_no_update_lost(self, clock, make_event):
        """Test every event id reaches each of its buckets under thread contention"""
        queue = PendingUpdateQueue(max_pending_buckets=10_000, clock=clock)
        events = [
            make_event(
                seller_id=f"seller-{n % 4}",
                product_id=f"prod-{n % 7}",
                event_timestamp=datetime(2025, 3, 10 + n % 5, 9, tzinfo=timezone.utc),
            )
            for n in range(600)
        ]
        expected = {}
        for event in events:
            for identity in bucket_identities(event):
                expected.setdefault(identity, set()).add(event.event_id)

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(queue.enqueue, events))

        assert len(queue) == len(expected)
        assert set(queue.pending_identities()) == set(expected)
        for identity, event_ids in expected.items():
            assert queue._pending[identity].event_ids == event_ids
