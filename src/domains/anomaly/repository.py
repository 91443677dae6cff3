"""Persistence for behavioral profiles and anomaly detections."""

import math
from typing import Any, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import AnomalyDetectionDB, BehavioralProfileDB

from .models import AnomalyDetection, BehavioralProfile

logger = structlog.get_logger()


def json_safe(value: Any) -> Any:
    """Replace NaN and infinities with None so the value fits in JSONB."""
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [json_safe(v) for v in value]
    return value


class ProfileRepository(Protocol):
    async def get(self, user_id: int) -> BehavioralProfile | None: ...

    async def save(self, profile: BehavioralProfile) -> None: ...


class DetectionStore(Protocol):
    async def append(self, detection: AnomalyDetection) -> bool:
        """Insert the detection. False if one already exists for its transaction and type."""
        ...


# --- SQL ---


class SqlProfileRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, user_id: int) -> BehavioralProfile | None:
        async with self._session_factory() as session:
            stmt = select(BehavioralProfileDB).where(BehavioralProfileDB.user_id == user_id)
            row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return BehavioralProfile.model_validate({**row.profile, "user_id": row.user_id})

    async def save(self, profile: BehavioralProfile) -> None:
        document = json_safe(profile.model_dump(mode="json"))
        values = {
            "user_id": profile.user_id,
            "is_established": profile.is_established,
            "user_segment": profile.user_segment.value if profile.user_segment else None,
            "profile": document,
        }
        stmt = pg_insert(BehavioralProfileDB).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[BehavioralProfileDB.user_id],
            set_={
                "is_established": stmt.excluded.is_established,
                "user_segment": stmt.excluded.user_segment,
                "profile": stmt.excluded.profile,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.debug("behavioral_profile_saved", user_id=profile.user_id)


class SqlDetectionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, detection: AnomalyDetection) -> bool:
        stmt = (
            pg_insert(AnomalyDetectionDB)
            .values(
                detection_id=detection.detection_id,
                transaction_id=detection.transaction_id,
                transaction_type=detection.transaction_type,
                user_id=detection.user_id,
                anomaly_type=detection.anomaly_type.value,
                detection_method=detection.detection_method.value,
                score=detection.score,
                confidence=detection.confidence,
                severity=detection.severity.value,
                features=json_safe(detection.features),
                explanation=json_safe(detection.explanation),
                context_snapshot=json_safe(detection.context_snapshot),
                model_version=detection.model_version,
                detected_at=detection.detected_at,
            )
            .on_conflict_do_nothing()
            .returning(AnomalyDetectionDB.id)
        )
        async with self._session_factory() as session:
            inserted = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
        return inserted is not None


# --- In-process ---


class InMemoryProfileRepository:
    def __init__(self, profiles: list[BehavioralProfile] | None = None) -> None:
        self._profiles = {p.user_id: p for p in profiles or []}

    async def get(self, user_id: int) -> BehavioralProfile | None:
        profile = self._profiles.get(user_id)
        return profile.model_copy(deep=True) if profile else None

    async def save(self, profile: BehavioralProfile) -> None:
        self._profiles[profile.user_id] = profile.model_copy(deep=True)


class InMemoryDetectionStore:
    def __init__(self) -> None:
        self.detections: list[AnomalyDetection] = []

    async def append(self, detection: AnomalyDetection) -> bool:
        if detection.transaction_id is not None and any(
            d.transaction_id == detection.transaction_id
            and d.anomaly_type == detection.anomaly_type
            for d in self.detections
        ):
            return False
        self.detections.append(detection)
        return True
