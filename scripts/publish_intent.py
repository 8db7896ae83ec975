"""Publish a notification intent to the dispatcher's Kafka topic.

The intent JSON is wrapped in the standard event envelope. Publishing the
same intent twice is a cheap way to watch `suppressed_duplicate` happen.
"""

import argparse
import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from aiokafka import AIOKafkaProducer


def make_envelope(intent: dict, trace_id: str | None = None) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": "notifications.intent",
        "aggregate_id": f"{intent['notification_key']}:{intent['event_id']}",
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "trace_id": trace_id or str(uuid4()),
        "payload": intent,
    }


async def publish(bootstrap_servers: str, topic: str, envelope: dict, copies: int) -> None:
    """Open producer, publish the envelope `copies` times, close producer."""

    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        for _ in range(copies):
            await producer.send_and_wait(topic, json.dumps(envelope).encode("utf-8"))
    finally:
        await producer.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Publish a notification intent to Kafka.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="notifications.intents")
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline intent JSON")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to intent JSON file")
    parser.add_argument("--copies", type=int, default=1, help="Publish the same envelope N times")
    parser.add_argument("--trace-id", default=None)
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")

    if args.json_inline:
        intent = json.loads(args.json_inline)
    else:
        intent = json.loads(Path(args.json_file).read_text())
    for field in ("notification_key", "event_id"):
        if not intent.get(field):
            raise SystemExit(f"intent is missing {field}")

    envelope = make_envelope(intent, args.trace_id)
    asyncio.run(publish(args.bootstrap_servers, args.topic, envelope, max(1, args.copies)))
    print(f"Published {max(1, args.copies)} intent(s) to topic={args.topic} event_id={envelope['event_id']}")


if __name__ == "__main__":
    main()
