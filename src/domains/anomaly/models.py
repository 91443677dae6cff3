"""Pydantic models for the anomaly detection domain."""

import math
from collections.abc import Mapping
from datetime import datetime
from enum import StrEnum
from typing import Any

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = structlog.get_logger()

# --- Enums ---


class AnomalyType(StrEnum):
    STATISTICAL = "statistical"
    VELOCITY = "velocity"
    GEOLOCATION = "geolocation"
    BEHAVIORAL = "behavioral"
    DEVICE = "device"


class DetectionMethod(StrEnum):
    Z_SCORE = "z_score"
    IQR = "iqr"
    ISOLATION_FOREST = "isolation_forest"
    LOF = "lof"
    SEASONAL = "seasonal"
    ADAPTIVE_THRESHOLD = "adaptive_threshold"
    DRIFT_DETECTION = "drift_detection"
    SLIDING_WINDOW = "sliding_window"
    BURST_DETECTION = "burst_detection"
    CROSS_ACCOUNT = "cross_account"
    IMPOSSIBLE_TRAVEL = "impossible_travel"
    GEO_CLUSTERING = "geo_clustering"
    IP_REPUTATION = "ip_reputation"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class UserSegment(StrEnum):
    NEW_ACCOUNT = "new_account"
    DORMANT_REACTIVATED = "dormant_reactivated"
    HIGH_VALUE_TRADER = "high_value_trader"
    OCCASIONAL_USER = "occasional_user"
    RETAIL_CONSUMER = "retail_consumer"


def calculate_severity(score: float) -> Severity:
    """Bucket a 0-100 score. Out-of-range scores clamp to the end buckets."""
    if score >= 80.0:
        return Severity.CRITICAL
    if score >= 60.0:
        return Severity.HIGH
    if score >= 40.0:
        return Severity.MEDIUM
    return Severity.LOW


# --- Context ---


class GeoPoint(BaseModel):
    lat: float = Field(validation_alias=AliasChoices("lat", "latitude"))
    lon: float = Field(validation_alias=AliasChoices("lon", "longitude"))


class DeviceData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    fingerprint: str | None = None
    ip: str | None = None


class TransactionContext(BaseModel):
    """Everything a detector may look at. Every field is optional."""

    model_config = ConfigDict(extra="ignore")

    amount: float | None = None
    currency: str | None = None
    type: str | None = None
    user_id: int | None = None

    hour_of_day: int | None = None
    day_of_week: int | None = None  # 0 = Monday
    time_since_last_transaction: float | None = None

    hourly_transaction_count: int | None = None
    daily_transaction_count: int | None = None
    daily_transaction_volume: float | None = None
    avg_daily_transaction_count: float | None = None

    lat: float | None = None
    lon: float | None = None
    last_lat: float | None = None
    last_lon: float | None = None
    time_diff_seconds: float | None = None

    ip: str | None = None
    ip_country: str | None = None
    device_data: DeviceData | None = None

    location_history: list[GeoPoint] = Field(default_factory=list)
    transaction_history: list[float] = Field(default_factory=list)

    @field_validator("transaction_history", mode="before")
    @classmethod
    def _coerce_history(cls, value: Any) -> list[float]:
        if not isinstance(value, list | tuple):
            return []
        amounts = []
        for item in value:
            if isinstance(item, Mapping):
                item = item.get("amount")
            try:
                amount = float(item)
            except (TypeError, ValueError):
                continue
            if math.isfinite(amount):
                amounts.append(amount)
        return amounts

    @field_validator("location_history", mode="before")
    @classmethod
    def _usable_points(cls, value: Any) -> list[GeoPoint]:
        if not isinstance(value, list | tuple):
            return []
        points = []
        for item in value:
            if isinstance(item, GeoPoint):
                points.append(item)
                continue
            try:
                points.append(GeoPoint.model_validate(item))
            except ValidationError:
                continue
        return points

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "TransactionContext":
        """Build a context, dropping any field whose value cannot be coerced."""
        values = dict(data or {})
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            invalid = {str(err["loc"][0]) for err in exc.errors() if err["loc"]}
        logger.warning("transaction_context_fields_dropped", fields=sorted(invalid))
        return cls.model_validate({k: v for k, v in values.items() if k not in invalid})

    @property
    def effective_ip(self) -> str | None:
        if self.ip:
            return self.ip
        return self.device_data.ip if self.device_data else None

    @property
    def device_fingerprint(self) -> str | None:
        return self.device_data.fingerprint if self.device_data else None

    @property
    def has_travel_points(self) -> bool:
        return None not in (self.lat, self.lon, self.last_lat, self.last_lon, self.time_diff_seconds)


# --- Behavioral profile ---


class TransactionRecord(BaseModel):
    """A completed transaction used to rebuild profile statistics."""

    amount: float
    created_at: datetime


class AdaptiveThresholds(BaseModel):
    amount_upper: float
    amount_lower: float
    daily_count_max: int
    daily_volume_max: float


class BehavioralProfile(BaseModel):
    user_id: int
    avg_transaction_amount: float = 0.0
    median_transaction_amount: float = 0.0
    max_transaction_amount: float = 0.0
    transaction_amount_std_dev: float = 0.0
    avg_daily_transaction_count: float = 0.0
    avg_monthly_transaction_count: float = 0.0
    max_daily_volume: float = 0.0
    max_daily_transactions: int = 0

    is_established: bool = False
    profile_established_at: datetime | None = None
    total_transaction_count: int = 0
    total_transaction_volume: float = 0.0
    days_since_first_transaction: int = 0

    # Percentage of transactions per hour (24 slots) and weekday (7 slots, 0 = Monday)
    typical_transaction_times: list[float] = Field(default_factory=list)
    typical_transaction_days: list[float] = Field(default_factory=list)

    common_locations: list[dict[str, Any]] = Field(default_factory=list)
    location_history: list[dict[str, Any]] = Field(default_factory=list)
    trusted_devices: list[str] = Field(default_factory=list)

    adaptive_thresholds: AdaptiveThresholds | None = None
    drift_score: float = 0.0
    drift_metrics: dict[str, float] = Field(default_factory=dict)
    last_drift_check_at: datetime | None = None
    user_segment: UserSegment | None = None
    segment_tags: list[str] = Field(default_factory=list)

    updated_at: datetime | None = None

    def hour_share(self, hour: int) -> float:
        if 0 <= hour < len(self.typical_transaction_times):
            return self.typical_transaction_times[hour]
        return 0.0

    def day_share(self, day: int) -> float:
        if 0 <= day < len(self.typical_transaction_days):
            return self.typical_transaction_days[day]
        return 0.0


# --- Detector results ---


class DetectorResult(BaseModel):
    detected: bool = False
    score: float = 0.0
    confidence: float = 0.0
    details: dict[str, Any] = Field(default_factory=dict)


class TravelAssessment(BaseModel):
    impossible: bool
    distance_km: float
    required_speed_kmh: float
    max_speed_kmh: float


class ClusterResult(BaseModel):
    clusters: list[list[GeoPoint]] = Field(default_factory=list)
    noise: list[GeoPoint] = Field(default_factory=list)
    cluster_count: int = 0


class NearestCluster(BaseModel):
    nearest_cluster_id: int | None = None
    distance_km: float
    outside_cluster: bool


class WindowEvaluation(BaseModel):
    exceeded: bool = False
    count: int = 0
    volume: float = 0.0
    max_count: int
    max_volume: float

    @property
    def breach_ratio(self) -> float:
        """How far over the tightest limit the window is, 0 when not exceeded."""
        if not self.exceeded:
            return 0.0
        ratios = []
        if self.max_count > 0:
            ratios.append(self.count / self.max_count)
        if self.max_volume > 0:
            ratios.append(self.volume / self.max_volume)
        return max(ratios, default=1.0)


class BurstResult(BaseModel):
    burst_detected: bool = False
    burst_ratio: float = 0.0
    details: dict[str, Any] = Field(default_factory=dict)


class CrossAccountResult(BaseModel):
    detected: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class IpIntelligence(BaseModel):
    model_config = ConfigDict(extra="allow")

    country: str | None = None
    is_vpn: bool = False
    is_proxy: bool = False
    is_tor: bool = False
    risk_score: float = 0.0


class IpReputation(BaseModel):
    risk_score: float = Field(default=0.0, ge=0.0, le=100.0)
    flags: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class ThresholdBreach(BaseModel):
    metric: str
    value: float
    threshold: float


class DriftResult(BaseModel):
    drifted: bool = False
    drift_score: float = 0.0
    details: dict[str, Any] = Field(default_factory=dict)


# --- Orchestrator output ---


class AnomalyCandidate(BaseModel):
    anomaly_type: AnomalyType
    detection_method: DetectionMethod
    score: float = Field(ge=0.0, le=100.0)
    detected: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def severity(self) -> Severity:
        return calculate_severity(self.score)


class AnomalyDetection(BaseModel):
    """Durable audit record. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    detection_id: str
    transaction_id: str | None = None
    transaction_type: str | None = None
    user_id: int | None = None
    anomaly_type: AnomalyType
    detection_method: DetectionMethod
    score: float
    confidence: float
    severity: Severity
    features: dict[str, Any] = Field(default_factory=dict)
    explanation: dict[str, Any] = Field(default_factory=dict)
    context_snapshot: dict[str, Any] = Field(default_factory=dict)
    model_version: str
    detected_at: datetime


class DetectionResult(BaseModel):
    anomalies: list[AnomalyCandidate] = Field(default_factory=list)
    highest_score: float = 0.0
    has_critical: bool = False
    persisted: int = 0
    failed_detectors: list[str] = Field(default_factory=list)


class AnomalyDetectedEvent(BaseModel):
    event_type: str = "anomaly-detected"
    detection_id: str
    transaction_id: str | None = None
    user_id: int | None = None
    anomaly_type: AnomalyType
    score: float
    severity: Severity
    detected_at: datetime
