"""Kafka producer helpers."""

import json

import structlog
from aiokafka import AIOKafkaProducer

logger = structlog.get_logger()


def serialize_value(value: dict) -> bytes:
    return json.dumps(value, default=str).encode("utf-8")


async def create_producer(bootstrap_servers: str) -> AIOKafkaProducer:
    """Create and start a Kafka producer with JSON values and string keys."""
    producer = AIOKafkaProducer(
        bootstrap_servers=bootstrap_servers,
        value_serializer=serialize_value,
        key_serializer=lambda k: k.encode("utf-8") if k is not None else None,
    )
    await producer.start()
    logger.info("kafka_producer_started", bootstrap_servers=bootstrap_servers)
    return producer


async def produce_event(
    producer: AIOKafkaProducer, topic: str, event: dict, key: str | None = None
) -> None:
    """Send an event and wait for the broker acknowledgement."""
    await producer.send_and_wait(topic, value=event, key=key)
    logger.debug("event_produced", topic=topic, event_type=event.get("event_type", "unknown"))
