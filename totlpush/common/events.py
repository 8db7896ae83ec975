"""Kafka envelope + consumer helpers.

Upstream event sources (score webhooks, chat posts, admin broadcasts) publish
notification intents wrapped in this envelope; the dispatcher consumes them.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer
from pydantic import BaseModel, Field

from totlpush.common.config import settings
from totlpush.common.logging import log_context, logger
from totlpush.common.metrics import event_queue_delay_seconds


class EventEnvelope(BaseModel):
    """Canonical event shape carried on Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    """Create a configured Kafka consumer for one topic/group."""

    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


def _queue_delay_seconds(event: EventEnvelope) -> float:
    occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    return max(0.0, (datetime.now(timezone.utc) - occurred_at).total_seconds())



async def _deliver(message, topic: str, handler) -> None:
    """Parse one record and hand it to `handler` under the intent's log context."""

    event = EventEnvelope.model_validate_json(message.value)
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(_queue_delay_seconds(event))
    with log_context(
        trace_id=event.trace_id,
        notification_key=str(event.payload.get("notification_key") or ""),
        event_id=str(event.payload.get("event_id") or ""),
    ):
        logger.info("intent_received topic=%s envelope_id=%s offset=%s", topic, event.event_id, message.offset)
        await handler(event)


async def consume_forever(topic: str, group_id: str, handler) -> None:
    """Consume `topic` until cancelled, reconnecting after broker errors.

    A bad record is logged and skipped; offsets are committed per batch. A
    redelivered intent is harmless: the send-log claim turns every repeated
    (notification, event, user) into `suppressed_duplicate`.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id)
            while True:
                batches = await consumer.getmany(timeout_ms=500, max_records=50)
                for message in (record for records in batches.values() for record in records):
                    try:
                        await _deliver(message, topic, handler)
                    except Exception as exc:
                        logger.error("intent_dropped topic=%s offset=%s error=%r", topic, message.offset, exc)
                if batches:
                    await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%r", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
