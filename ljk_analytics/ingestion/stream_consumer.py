"""
Kafka Stream Consumer

Feeds domain events from Kafka into the trigger layer:
- Users and answers topics
- Event deserialization and validation
- Dead-letter queue for unparseable events and failed sub-updates
- Manual offset commits after every message (log and drop, no redelivery loop)
- Metrics and observability

Redelivered messages are harmless: the counter updater's ledger folds each
event at most once.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError
from prometheus_client import Counter, Histogram
from pydantic import ValidationError

from ljk_analytics.aggregation.events import EventType, parse_event
from ljk_analytics.aggregation.triggers import EventDispatcher, SubUpdateStatus
from ljk_analytics.config import get_settings

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

EVENTS_CONSUMED = Counter(
    "ljk_events_consumed_total",
    "Total number of events consumed",
    ["topic", "status"],
)

EVENT_PROCESSING_TIME = Histogram(
    "ljk_event_processing_seconds",
    "Time spent processing events",
    ["topic", "event_type"],
)


# =============================================================================
# STREAM CONSUMER
# =============================================================================

@dataclass
class ConsumerConfig:
    """Kafka consumer configuration"""
    topic_event_types: Dict[str, EventType] = field(default_factory=dict)
    group_id: str = "ljk-analytics"
    bootstrap_servers: str = "localhost:9092"
    auto_offset_reset: str = "earliest"
    max_poll_records: int = 200
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 10000
    dlq_suffix: str = ".dlq"

    @classmethod
    def from_settings(cls) -> "ConsumerConfig":
        kafka = get_settings().kafka
        return cls(
            topic_event_types={
                kafka.topics_users: EventType.USER_CREATED,
                kafka.topics_answers: EventType.ANSWER_SHEET_SUBMITTED,
            },
            group_id=kafka.consumer_group,
            bootstrap_servers=kafka.bootstrap_servers,
            auto_offset_reset=kafka.auto_offset_reset,
            max_poll_records=kafka.max_poll_records,
            session_timeout_ms=kafka.session_timeout_ms,
            heartbeat_interval_ms=kafka.heartbeat_interval_ms,
            dlq_suffix=kafka.dlq_suffix,
        )

    @property
    def topics(self) -> List[str]:
        return list(self.topic_event_types)


def normalize_payload(event_type: EventType, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shape a raw topic payload into the event wire format.

    Producers publish the created record itself plus its path parameters;
    answer sheets arrive flat (``examId``, ``answerId`` next to the sheet
    fields) and are nested under ``record`` here.
    """
    payload = dict(data)
    payload.setdefault("eventType", event_type.value)
    if event_type == EventType.ANSWER_SHEET_SUBMITTED and "record" not in payload:
        path_keys = {"eventType", "occurredAt", "examId", "answerId"}
        payload = {
            **{k: v for k, v in payload.items() if k in path_keys},
            "record": {k: v for k, v in payload.items() if k not in path_keys},
        }
    return payload


class StreamConsumer:
    """
    Kafka consumer dispatching events to the aggregation core.

    Example:
        consumer = StreamConsumer(dispatcher)
        await consumer.start()
    """

    def __init__(self, dispatcher: EventDispatcher, config: Optional[ConsumerConfig] = None):
        self.dispatcher = dispatcher
        self.config = config or ConsumerConfig.from_settings()

        self._consumer: Optional[AIOKafkaConsumer] = None
        self._producer: Optional[AIOKafkaProducer] = None  # For DLQ
        self._running = False

    async def _create_consumer(self) -> AIOKafkaConsumer:
        """Create and configure Kafka consumer"""
        return AIOKafkaConsumer(
            *self.config.topics,
            bootstrap_servers=self.config.bootstrap_servers,
            group_id=self.config.group_id,
            auto_offset_reset=self.config.auto_offset_reset,
            enable_auto_commit=False,
            max_poll_records=self.config.max_poll_records,
            session_timeout_ms=self.config.session_timeout_ms,
            heartbeat_interval_ms=self.config.heartbeat_interval_ms,
            value_deserializer=lambda m: json.loads(m.decode("utf-8")),
            key_deserializer=lambda k: k.decode("utf-8") if k else None,
        )

    async def _create_producer(self) -> AIOKafkaProducer:
        """Create producer for dead-letter queue"""
        return AIOKafkaProducer(
            bootstrap_servers=self.config.bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
        )

    def _parse_event(self, topic: str, data: Any):
        """Parse raw event data into a typed event, None when invalid"""
        if not isinstance(data, dict):
            logger.warning("Event payload is not an object", topic=topic)
            return None

        event_type = self.config.topic_event_types.get(topic)
        if event_type is None:
            logger.warning("Message on unmapped topic", topic=topic)
            return None

        try:
            return parse_event(normalize_payload(event_type, data))
        except ValidationError as e:
            logger.warning("Event validation failed", topic=topic, error=str(e))
            return None

    async def _send_to_dlq(self, topic: str, data: Any, error: str) -> None:
        """Send failed event to dead-letter queue"""
        if not self._producer:
            return

        dlq_topic = f"{topic}{self.config.dlq_suffix}"
        dlq_message = {
            "original_topic": topic,
            "original_data": data,
            "error": error,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }

        try:
            await self._producer.send_and_wait(dlq_topic, value=dlq_message)
            logger.info("Sent event to DLQ", topic=dlq_topic)
        except KafkaError as e:
            logger.error("Failed to send to DLQ", topic=dlq_topic, error=str(e))

    async def process_message(self, topic: str, data: Any) -> bool:
        """
        Process a single message value.

        Returns:
            True when every sub-update was applied, skipped or a duplicate
        """
        event = self._parse_event(topic, data)
        if event is None:
            EVENTS_CONSUMED.labels(topic=topic, status="invalid").inc()
            await self._send_to_dlq(topic, data, "Event parsing failed")
            return False

        start_time = asyncio.get_running_loop().time()
        report = await self.dispatcher.dispatch(event)
        EVENT_PROCESSING_TIME.labels(
            topic=topic,
            event_type=event.event_type,
        ).observe(asyncio.get_running_loop().time() - start_time)

        if report.failed:
            EVENTS_CONSUMED.labels(topic=topic, status="error").inc()
            failed = [r.name for r in report.results if r.status == SubUpdateStatus.FAILED]
            await self._send_to_dlq(topic, data, f"Sub-updates failed: {', '.join(failed)}")
            return False

        EVENTS_CONSUMED.labels(topic=topic, status="success").inc()
        return True

    async def start(self) -> None:
        """Start consuming events"""
        logger.info(
            "Starting stream consumer",
            topics=self.config.topics,
            group_id=self.config.group_id,
        )

        self._consumer = await self._create_consumer()
        self._producer = await self._create_producer()

        await self._consumer.start()
        await self._producer.start()

        self._running = True

        try:
            async for message in self._consumer:
                if not self._running:
                    break

                with structlog.contextvars.bound_contextvars(
                    topic=message.topic,
                    partition=message.partition,
                    offset=message.offset,
                ):
                    await self.process_message(message.topic, message.value)

                # Failures were dead-lettered; never block the partition on them
                await self._consumer.commit()

        except KafkaConnectionError as e:
            logger.error("Kafka connection error", error=str(e))

        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the consumer gracefully"""
        if not self._running and self._consumer is None:
            return

        logger.info("Stopping stream consumer")
        self._running = False

        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
        if self._producer:
            await self._producer.stop()
            self._producer = None

        logger.info("Stream consumer stopped")


# =============================================================================
# ENTRY POINT
# =============================================================================

async def run_consumer() -> None:
    """Run the consumer as a standalone worker process"""
    from ljk_analytics.aggregation.updater import AtomicCounterUpdater
    from ljk_analytics.config.logging import configure_logging
    from ljk_analytics.database.connection import (
        close_database,
        create_schema,
        get_session_factory,
        init_database,
    )
    from ljk_analytics.serving.cache import close_redis, connect_redis_optional, invalidate_report

    configure_logging()
    await init_database()
    await create_schema()
    await connect_redis_optional()

    dispatcher = EventDispatcher(AtomicCounterUpdater(get_session_factory()), on_folded=invalidate_report)
    consumer = StreamConsumer(dispatcher)
    try:
        await consumer.start()
    finally:
        await close_redis()
        await close_database()


def main() -> None:
    asyncio.run(run_consumer())


if __name__ == "__main__":
    main()
