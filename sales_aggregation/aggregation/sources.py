"""
Outbound Collaborators

The engine reads raw history from a HistoricalEventSource and writes
documents to an AggregateStore. Both are injected at construction time; the
in-memory implementations back local runs and tests.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .documents import SalesAggregate
from .events import SalesEvent


class HistoricalEventSource(ABC):
    """Read access to the raw sales event store"""

    @abstractmethod
    async def get_events_in_range(
        self,
        seller_id: str,
        start: datetime,
        end: datetime,
    ) -> List[SalesEvent]:
        """
        Return every event of ``seller_id`` with ``start <= event_timestamp < end``.

        Args:
            seller_id: Seller whose history to read
            start: Inclusive range start (UTC)
            end: Exclusive range end (UTC)
        """


class AggregateStore(ABC):
    """Persistence of aggregate documents with overwrite-not-merge semantics"""

    @abstractmethod
    async def upsert(self, document_id: str, document: SalesAggregate) -> None:
        """Replace the document stored under ``document_id`` entirely"""

    @abstractmethod
    async def get(self, document_id: str) -> Optional[SalesAggregate]:
        """Return the stored document, or None"""

    @abstractmethod
    async def purge_before(self, cutoff: datetime) -> int:
        """Delete documents whose period ended before ``cutoff``; return the count"""


class InMemoryEventSource(HistoricalEventSource):
    """Event source over an in-process list"""

    def __init__(self, events: Optional[Iterable[SalesEvent]] = None):
        self._events: List[SalesEvent] = list(events or [])

    def add(self, *events: SalesEvent) -> None:
        self._events.extend(events)

    async def get_events_in_range(
        self,
        seller_id: str,
        start: datetime,
        end: datetime,
    ) -> List[SalesEvent]:
        return [
            e for e in self._events
            if e.seller_id == seller_id and start <= e.event_timestamp < end
        ]


class InMemoryAggregateStore(AggregateStore):
    """Aggregate store over an in-process dict"""

    def __init__(self):
        self._documents: Dict[str, SalesAggregate] = {}
        self._lock = asyncio.Lock()

    @property
    def documents(self) -> Dict[str, SalesAggregate]:
        return dict(self._documents)

    async def upsert(self, document_id: str, document: SalesAggregate) -> None:
        async with self._lock:
            self._documents[document_id] = document.model_copy(deep=True)

    async def get(self, document_id: str) -> Optional[SalesAggregate]:
        document = self._documents.get(document_id)
        return document.model_copy(deep=True) if document else None

    async def purge_before(self, cutoff: datetime) -> int:
        async with self._lock:
            expired = [k for k, d in self._documents.items() if d.period_end < cutoff]
            for key in expired:
                del self._documents[key]
        return len(expired)
