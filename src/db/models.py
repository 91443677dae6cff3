"""SQLAlchemy ORM models for anomaly engine state."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Float, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class BehavioralProfileDB(Base):
    __tablename__ = "behavioral_profiles"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    is_established: Mapped[bool] = mapped_column(Boolean, default=False)
    user_segment: Mapped[str | None] = mapped_column(String, nullable=True)
    # Full BehavioralProfile document
    profile: Mapped[dict] = mapped_column(JSONB, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class AnomalyDetectionDB(Base):
    """Append-only detection log. One row per (transaction, anomaly type)."""

    __tablename__ = "anomaly_detections"
    __table_args__ = (
        UniqueConstraint("transaction_id", "anomaly_type", name="uq_anomaly_txn_type"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    detection_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    transaction_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    transaction_type: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[int | None] = mapped_column(BigInteger, index=True, nullable=True)
    anomaly_type: Mapped[str] = mapped_column(String, index=True)
    detection_method: Mapped[str] = mapped_column(String)
    score: Mapped[float] = mapped_column(Float)
    confidence: Mapped[float] = mapped_column(Float)
    severity: Mapped[str] = mapped_column(String, index=True)
    features: Mapped[dict] = mapped_column(JSONB, default=dict)
    explanation: Mapped[dict] = mapped_column(JSONB, default=dict)
    context_snapshot: Mapped[dict] = mapped_column(JSONB, default=dict)
    model_version: Mapped[str] = mapped_column(String)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
