"""
Kafka Sales Event Consumer

Feeds the aggregation engine from the sales-events topic:
- Consumer group management with manual commits
- Event deserialization and validation at the ingest boundary
- Dead-letter queue for malformed events and events that could not be recorded
- Backpressure handling: a message rejected by a full pending queue is
  re-offered after a pause and its offset is only committed once accepted
- Metrics and observability
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional

import structlog
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError
from prometheus_client import Counter, Histogram

from sales_aggregation.aggregation.events import SalesEvent, parse_sales_event
from sales_aggregation.aggregation.exceptions import BackpressureError, IngestError
from sales_aggregation.aggregation.service import SalesAggregationService
from sales_aggregation.config import get_settings

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

MESSAGES_CONSUMED = Counter(
    "sales_aggregation_messages_consumed_total",
    "Kafka messages handled by the sales event consumer",
    ["topic", "status"],
)

MESSAGE_PROCESSING_TIME = Histogram(
    "sales_aggregation_message_processing_seconds",
    "Time spent handling one Kafka message",
    ["topic"],
)


EventRecorder = Callable[[SalesEvent], Awaitable[Any]]


# =============================================================================
# STREAM CONSUMER
# =============================================================================

@dataclass
class ConsumerConfig:
    """Kafka consumer configuration"""
    topics: List[str]
    group_id: str = "sales-aggregation"
    bootstrap_servers: str = "localhost:9092"
    auto_offset_reset: str = "earliest"
    enable_auto_commit: bool = False  # Manual commit after the engine accepted the event
    max_poll_records: int = 500
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 10000
    backpressure_retry_ms: int = 1000
    record_attempts: int = 3
    record_retry_ms: int = 500

    @classmethod
    def from_settings(cls) -> "ConsumerConfig":
        kafka = get_settings().kafka
        return cls(
            topics=[kafka.topics_sales_events],
            group_id=kafka.consumer_group,
            bootstrap_servers=kafka.bootstrap_servers,
            auto_offset_reset=kafka.auto_offset_reset,
            max_poll_records=kafka.max_poll_records,
            session_timeout_ms=kafka.session_timeout_ms,
            heartbeat_interval_ms=kafka.heartbeat_interval_ms,
            backpressure_retry_ms=kafka.backpressure_retry_ms,
            record_attempts=kafka.record_attempts,
            record_retry_ms=kafka.record_retry_ms,
        )


def _decode_json(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


class SalesEventConsumer:
    """
    Kafka consumer delivering sales events to a SalesAggregationService.

    Example:
        consumer = SalesEventConsumer(service, recorder=persist_sales_event)
        await consumer.start()
    """

    def __init__(
        self,
        service: SalesAggregationService,
        config: Optional[ConsumerConfig] = None,
        recorder: Optional[EventRecorder] = None,
        consumer: Optional[AIOKafkaConsumer] = None,
        producer: Optional[AIOKafkaProducer] = None,
    ):
        self.service = service
        self.config = config or ConsumerConfig.from_settings()
        self._recorder = recorder
        self._consumer = consumer
        self._producer = producer  # For DLQ
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def _create_consumer(self) -> AIOKafkaConsumer:
        """Create and configure Kafka consumer"""
        return AIOKafkaConsumer(
            *self.config.topics,
            bootstrap_servers=self.config.bootstrap_servers,
            group_id=self.config.group_id,
            auto_offset_reset=self.config.auto_offset_reset,
            enable_auto_commit=self.config.enable_auto_commit,
            max_poll_records=self.config.max_poll_records,
            session_timeout_ms=self.config.session_timeout_ms,
            heartbeat_interval_ms=self.config.heartbeat_interval_ms,
            key_deserializer=lambda k: k.decode("utf-8") if k else None,
        )

    def _create_producer(self) -> AIOKafkaProducer:
        """Create producer for dead-letter queue"""
        return AIOKafkaProducer(
            bootstrap_servers=self.config.bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
        )

    async def _send_to_dlq(self, topic: str, data: Any, error: Exception) -> None:
        """Send a rejected message to ``<topic>.dlq``"""
        if not self._producer:
            return

        dlq_topic = f"{topic}.dlq"
        dlq_message = {
            "original_topic": topic,
            "original_data": data,
            "error": str(error),
            "errors": getattr(error, "errors", []),
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }

        try:
            await self._producer.send_and_wait(dlq_topic, value=dlq_message)
            logger.info("Sent event to DLQ", topic=dlq_topic)
        except Exception as e:
            logger.error("Failed to send to DLQ", topic=dlq_topic, error=str(e))

    async def _record(self, event: SalesEvent) -> bool:
        """Persist the raw event, retrying with a growing pause"""
        attempts = self.config.record_attempts
        for attempt in range(1, attempts + 1):
            try:
                await self._recorder(event)
                return True
            except Exception as e:
                logger.error(
                    "Failed to record sales event",
                    event_id=event.event_id,
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e),
                )
                if attempt < attempts:
                    await asyncio.sleep(self.config.record_retry_ms * attempt / 1000)
        return False

    async def handle_message(self, topic: str, raw_value: Any) -> bool:
        """
        Deliver one message to the engine.

        Returns:
            True once the message is settled (accepted or dead-lettered) and
            its offset may be committed; False if the event could not be
            recorded or the consumer stopped while the engine was still
            applying backpressure
        """
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            data = _decode_json(raw_value)
            event = parse_sales_event(data)
        except (ValueError, IngestError) as e:
            error = e if isinstance(e, IngestError) else IngestError(f"Undecodable message: {e}")
            logger.warning("Rejected sales event message", topic=topic, error=str(error))
            MESSAGES_CONSUMED.labels(topic=topic, status="rejected").inc()
            payload = raw_value.decode("utf-8", "replace") if isinstance(raw_value, (bytes, bytearray)) else raw_value
            await self._send_to_dlq(topic, payload, error)
            return True

        if self._recorder is not None and not await self._record(event):
            MESSAGES_CONSUMED.labels(topic=topic, status="error").inc()
            error = RuntimeError(f"Could not record event after {self.config.record_attempts} attempts")
            await self._send_to_dlq(topic, data, error)
            return False

        while True:
            try:
                self.service.process_sales_event(event)
                break
            except BackpressureError as e:
                MESSAGES_CONSUMED.labels(topic=topic, status="backpressure").inc()
                if not self._running:
                    return False
                logger.info(
                    "Engine applying backpressure, pausing consumption",
                    event_id=event.event_id,
                    pending=e.pending,
                    retry_ms=self.config.backpressure_retry_ms,
                )
                await asyncio.sleep(self.config.backpressure_retry_ms / 1000)

        MESSAGES_CONSUMED.labels(topic=topic, status="accepted").inc()
        MESSAGE_PROCESSING_TIME.labels(topic=topic).observe(loop.time() - started)
        return True

    async def start(self) -> None:
        """Start consuming events until stopped"""
        logger.info(
            "Starting sales event consumer",
            topics=self.config.topics,
            group_id=self.config.group_id,
        )

        if self._consumer is None:
            self._consumer = self._create_consumer()
        if self._producer is None:
            self._producer = self._create_producer()

        await self._consumer.start()
        await self._producer.start()

        self._running = True

        try:
            async for message in self._consumer:
                if not self._running:
                    break

                settled = await self.handle_message(message.topic, message.value)

                # Manual commit once settled
                if settled:
                    await self._consumer.commit()

        except KafkaConnectionError as e:
            logger.error("Kafka connection error", error=str(e))
            raise

        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the consumer gracefully"""
        logger.info("Stopping sales event consumer")
        self._running = False

        consumer, self._consumer = self._consumer, None
        producer, self._producer = self._producer, None
        if consumer:
            await consumer.stop()
        if producer:
            await producer.stop()

        logger.info("Sales event consumer stopped")

