"""Wires the orchestrator and its collaborators from application settings."""

from dataclasses import dataclass, field

import structlog
from aiokafka import AIOKafkaProducer
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from src.config import Settings
from src.db.database import build_engine, build_session_factory, check_db, init_db
from src.shared.kafka_utils import create_producer

from .config import AnomalyConfig
from .counters import CounterStore, InMemoryCounterStore, RedisCounterStore
from .events import KafkaEventSink
from .ip_reputation import (
    CachedIpIntelligenceProvider,
    HttpIpIntelligenceProvider,
    IpIntelligenceProvider,
    IpReputationService,
    StaticIpIntelligenceProvider,
)
from .orchestrator import AnomalyDetectionOrchestrator
from .repository import SqlDetectionStore, SqlProfileRepository

logger = structlog.get_logger()


@dataclass
class AnomalyEngine:
    """A running orchestrator plus the connections it owns."""

    orchestrator: AnomalyDetectionOrchestrator
    ip_reputation: IpReputationService
    db_engine: AsyncEngine
    redis: Redis | None = None
    producer: AIOKafkaProducer | None = None
    closers: list = field(default_factory=list)

    async def close(self) -> None:
        for close in self.closers:
            await close()
        if self.producer is not None:
            await self.producer.stop()
        if self.redis is not None:
            await self.redis.aclose()
        await self.db_engine.dispose()
        logger.info("anomaly_engine_stopped")


def build_ip_provider(settings: Settings, redis: Redis | None) -> tuple[IpIntelligenceProvider, list]:
    """HTTP provider when a URL is configured (Redis-cached if available), else empty static data."""
    if not settings.ip_intel_url:
        logger.warning("ip_intelligence_not_configured")
        return StaticIpIntelligenceProvider(), []

    http = HttpIpIntelligenceProvider(
        settings.ip_intel_url,
        api_key=settings.ip_intel_api_key,
        timeout_seconds=settings.ip_intel_timeout_seconds,
    )
    provider: IpIntelligenceProvider = http
    if redis is not None:
        provider = CachedIpIntelligenceProvider(http, redis, settings.ip_intel_cache_ttl_seconds)
    return provider, [http.close]


async def start_engine(
    settings: Settings,
    config: AnomalyConfig | None = None,
    connect_kafka: bool = True,
) -> AnomalyEngine:
    """Connect to Postgres, Redis and Kafka and build the orchestrator."""
    config = config or AnomalyConfig.from_env()

    db_engine = build_engine(settings.database_url, echo=settings.debug)
    await init_db(db_engine)
    if not await check_db(db_engine):
        logger.warning("anomaly_engine_database_unavailable")
    session_factory = build_session_factory(db_engine)

    redis: Redis | None = None
    counters: CounterStore
    if settings.redis_url:
        redis = Redis.from_url(settings.redis_url, decode_responses=True)
        counters = RedisCounterStore(redis)
    else:
        logger.warning("anomaly_counters_in_process")
        counters = InMemoryCounterStore()

    producer = None
    if connect_kafka:
        try:
            producer = await create_producer(settings.kafka_bootstrap_servers)
        except Exception:
            # Detections are still persisted; only the events are lost
            logger.exception("kafka_producer_start_failed")

    provider, closers = build_ip_provider(settings, redis)
    ip_reputation = IpReputationService(provider, counters, config.ip_reputation)

    orchestrator = AnomalyDetectionOrchestrator(
        profiles=SqlProfileRepository(session_factory),
        counters=counters,
        ip_reputation=ip_reputation,
        detections=SqlDetectionStore(session_factory),
        events=KafkaEventSink(producer, settings.anomaly_events_topic),
        config=config,
    )
    logger.info(
        "anomaly_engine_started",
        enabled=config.orchestration.enabled,
        model_version=config.orchestration.model_version,
        redis=redis is not None,
        kafka=producer is not None,
    )
    return AnomalyEngine(
        orchestrator=orchestrator,
        ip_reputation=ip_reputation,
        db_engine=db_engine,
        redis=redis,
        producer=producer,
        closers=closers,
    )
