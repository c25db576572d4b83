"""
Redis Aggregate Cache

Low-latency home for aggregate documents read by seller dashboards:
- Connection pooling
- JSON serialization of whole documents (SET overwrites, never merges)
- Period-end index for retention purges
"""

from datetime import datetime
from typing import List, Optional

import structlog
from redis.asyncio import ConnectionPool, Redis

from sales_aggregation.aggregation.documents import SalesAggregate
from sales_aggregation.aggregation.sources import AggregateStore
from sales_aggregation.config import get_settings

logger = structlog.get_logger(__name__)

# Global Redis connection
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis(url: Optional[str] = None) -> Redis:
    """Initialize Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()
    _redis_pool = ConnectionPool.from_url(
        url or settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
        decode_responses=True,
    )

    _redis_client = Redis(connection_pool=_redis_pool)

    # Test connection
    try:
        await _redis_client.ping()
        logger.info("Redis connection established")
    except Exception as e:
        logger.error("Redis connection failed", error=str(e))
        raise

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None

    logger.info("Redis connection closed")


def get_redis() -> Redis:
    """Get Redis client instance"""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


class RedisAggregateStore(AggregateStore):
    """
    Aggregate store keeping each document as one JSON string.

    Example:
        store = RedisAggregateStore(await init_redis(), namespace="sales_aggregates")
        await store.upsert(doc.document_id, doc)
        doc = await store.get(doc.document_id)
    """

    def __init__(self, client: Optional[Redis] = None, namespace: Optional[str] = None):
        self._client = client
        self.namespace = namespace or get_settings().redis.namespace

    @property
    def client(self) -> Redis:
        return self._client if self._client is not None else get_redis()

    def _key(self, document_id: str) -> str:
        """Generate namespaced key"""
        return f"{self.namespace}:{document_id}"

    @property
    def _period_index(self) -> str:
        return f"{self.namespace}:__period_end__"

    async def upsert(self, document_id: str, document: SalesAggregate) -> None:
        await self.client.set(self._key(document_id), document.model_dump_json())
        await self.client.zadd(self._period_index, {document_id: document.period_end.timestamp()})

    async def get(self, document_id: str) -> Optional[SalesAggregate]:
        value = await self.client.get(self._key(document_id))
        if value is None:
            return None
        return SalesAggregate.model_validate_json(value)

    async def purge_before(self, cutoff: datetime) -> int:
        expired: List[str] = await self.client.zrangebyscore(
            self._period_index, "-inf", f"({cutoff.timestamp()}"
        )
        if not expired:
            return 0

        await self.client.delete(*(self._key(document_id) for document_id in expired))
        await self.client.zrem(self._period_index, *expired)
        logger.debug("Purged cached aggregates", cutoff=cutoff.isoformat(), removed=len(expired))
        return len(expired)
