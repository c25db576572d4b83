"""
Aggregation Error Taxonomy

Ingest-time errors surface synchronously to the caller. Flush-time errors
are isolated per bucket by the scheduler and decide whether the bucket is
retried on the next tick or backed off towards the dead-letter list.
"""

from typing import Any, Dict, List, Optional


class AggregationError(Exception):
    """Base class for all aggregation engine errors"""


class IngestError(AggregationError):
    """A sales event was malformed and has not been queued."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class BackpressureError(AggregationError):
    """The pending queue is at its high-water mark; retry the event later."""

    retryable = True

    def __init__(self, pending: int, limit: int):
        super().__init__(f"Pending update queue is full ({pending}/{limit} buckets)")
        self.pending = pending
        self.limit = limit


class TransientStoreError(AggregationError):
    """An I/O failure or timeout while reading history or writing an aggregate."""


class PermanentComputationError(AggregationError):
    """Metrics computation failed for a bucket's event set."""

    def __init__(self, message: str, event_count: int = 0):
        super().__init__(message)
        self.event_count = event_count
