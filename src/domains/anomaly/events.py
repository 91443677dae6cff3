"""AnomalyDetected event publication."""

from typing import Protocol

import structlog
from aiokafka import AIOKafkaProducer

from src.shared.kafka_utils import produce_event

from .models import AnomalyDetectedEvent, AnomalyDetection

logger = structlog.get_logger()


def build_event(detection: AnomalyDetection) -> AnomalyDetectedEvent:
    return AnomalyDetectedEvent(
        detection_id=detection.detection_id,
        transaction_id=detection.transaction_id,
        user_id=detection.user_id,
        anomaly_type=detection.anomaly_type,
        score=detection.score,
        severity=detection.severity,
        detected_at=detection.detected_at,
    )


class EventSink(Protocol):
    async def publish(self, event: AnomalyDetectedEvent) -> None: ...


class KafkaEventSink:
    """Publishes AnomalyDetected events keyed by transaction id.

    Keying by transaction keeps every event for one transaction on the same
    partition, in order.
    """

    def __init__(self, producer: AIOKafkaProducer | None, topic: str) -> None:
        self._producer = producer
        self._topic = topic

    async def publish(self, event: AnomalyDetectedEvent) -> None:
        if self._producer is None:
            logger.debug("kafka_producer_not_available", detection_id=event.detection_id)
            return

        await produce_event(
            self._producer,
            self._topic,
            event.model_dump(mode="json"),
            key=event.transaction_id or event.detection_id,
        )
        logger.info(
            "anomaly_event_published",
            detection_id=event.detection_id,
            anomaly_type=event.anomaly_type,
            topic=self._topic,
        )


class InMemoryEventSink:
    def __init__(self) -> None:
        self.events: list[AnomalyDetectedEvent] = []

    async def publish(self, event: AnomalyDetectedEvent) -> None:
        self.events.append(event)
