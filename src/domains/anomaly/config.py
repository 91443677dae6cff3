"""Anomaly detection configuration with sensible defaults."""

import os
from dataclasses import dataclass, field


@dataclass
class SlidingWindow:
    label: str
    minutes: int
    max_count: int
    max_volume: float
    # Number of ring buckets the window is split into
    buckets: int = 12

    @property
    def seconds(self) -> int:
        return self.minutes * 60

    @property
    def bucket_seconds(self) -> int:
        return max(1, self.seconds // self.buckets)


def _default_windows() -> list[SlidingWindow]:
    return [
        SlidingWindow("5m", 5, max_count=5, max_volume=10_000.0, buckets=5),
        SlidingWindow("15m", 15, max_count=10, max_volume=25_000.0, buckets=15),
        SlidingWindow("1h", 60, max_count=20, max_volume=50_000.0),
        SlidingWindow("6h", 360, max_count=50, max_volume=100_000.0),
        SlidingWindow("24h", 1440, max_count=100, max_volume=250_000.0, buckets=24),
        SlidingWindow("7d", 10080, max_count=300, max_volume=1_000_000.0, buckets=28),
    ]


@dataclass
class StatisticalConfig:
    z_score_threshold: float = 3.0
    iqr_multiplier: float = 1.5
    min_samples: int = 10
    isolation_forest_contamination: float = 0.1
    lof_neighbors: int = 20
    max_history_size: int = 1000


@dataclass
class CrossAccountConfig:
    enabled: bool = False
    time_window_minutes: int = 60
    shared_device_threshold: int = 3
    shared_ip_threshold: int = 5


@dataclass
class VelocityConfig:
    sliding_windows: list[SlidingWindow] = field(default_factory=_default_windows)
    burst_ratio_threshold: float = 3.0
    cross_account: CrossAccountConfig = field(default_factory=CrossAccountConfig)


@dataclass
class GeolocationConfig:
    max_travel_speed_kmh: float = 900.0
    cluster_radius_km: float = 50.0
    cluster_min_points: int = 3
    cluster_max_points: int = 1000
    outside_cluster_km: float = 500.0


@dataclass
class BehavioralConfig:
    adaptive_sensitivity: float = 1.5
    drift_threshold: float = 0.3
    drift_window_days: int = 7
    # Establishment gate: the profile is a baseline only past both minimums
    min_transactions: int = 10
    min_days: int = 30
    location_history_size: int = 100
    common_locations_size: int = 10
    # Segment cascade
    new_account_days: int = 30
    dormant_days: int = 90
    high_value_avg_amount: float = 10_000.0
    high_value_monthly_count: int = 20
    occasional_monthly_count: int = 5


@dataclass
class IpReputationConfig:
    ip_reputation_threshold: float = 60.0
    vpn_weight: float = 25.0
    proxy_weight: float = 30.0
    tor_weight: float = 40.0
    provider_risk_floor: float = 50.0
    provider_risk_factor: float = 0.5
    blocked_association_min: int = 3
    blocked_association_weight: float = 10.0
    blocked_association_cap: float = 40.0
    blocked_lookback_days: int = 90


@dataclass
class OrchestrationConfig:
    enabled: bool = False
    persistence_threshold: float = 40.0
    detector_timeout_seconds: float = 2.0
    lookup_timeout_seconds: float = 1.0
    model_version: str = "anomaly-v1"


@dataclass
class AnomalyConfig:
    statistical: StatisticalConfig = field(default_factory=StatisticalConfig)
    velocity: VelocityConfig = field(default_factory=VelocityConfig)
    geolocation: GeolocationConfig = field(default_factory=GeolocationConfig)
    behavioral: BehavioralConfig = field(default_factory=BehavioralConfig)
    ip_reputation: IpReputationConfig = field(default_factory=IpReputationConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)

    def __post_init__(self) -> None:
        labels = [w.label for w in self.velocity.sliding_windows]
        if len(labels) != len(set(labels)):
            raise ValueError(f"Sliding window labels must be unique, got {labels}")
        if self.statistical.lof_neighbors < 1:
            raise ValueError("lof_neighbors must be at least 1")
        if self.geolocation.cluster_min_points < 1:
            raise ValueError("cluster_min_points must be at least 1")

    @classmethod
    def from_env(cls) -> "AnomalyConfig":
        """Load config with env var overrides. Env vars use ANOMALY_ prefix."""
        config = cls()

        if v := os.getenv("ANOMALY_ENABLED"):
            config.orchestration.enabled = v.lower() in ("1", "true", "yes", "on")
        if v := os.getenv("ANOMALY_PERSISTENCE_THRESHOLD"):
            config.orchestration.persistence_threshold = float(v)
        if v := os.getenv("ANOMALY_DETECTOR_TIMEOUT_SECONDS"):
            config.orchestration.detector_timeout_seconds = float(v)
        if v := os.getenv("ANOMALY_MODEL_VERSION"):
            config.orchestration.model_version = v

        # Statistical overrides
        if v := os.getenv("ANOMALY_Z_SCORE_THRESHOLD"):
            config.statistical.z_score_threshold = float(v)
        if v := os.getenv("ANOMALY_IQR_MULTIPLIER"):
            config.statistical.iqr_multiplier = float(v)
        if v := os.getenv("ANOMALY_LOF_NEIGHBORS"):
            config.statistical.lof_neighbors = int(v)

        # Velocity overrides
        if v := os.getenv("ANOMALY_BURST_RATIO_THRESHOLD"):
            config.velocity.burst_ratio_threshold = float(v)
        if v := os.getenv("ANOMALY_CROSS_ACCOUNT_ENABLED"):
            config.velocity.cross_account.enabled = v.lower() in ("1", "true", "yes", "on")

        # Geolocation overrides
        if v := os.getenv("ANOMALY_MAX_TRAVEL_SPEED_KMH"):
            config.geolocation.max_travel_speed_kmh = float(v)
        if v := os.getenv("ANOMALY_CLUSTER_RADIUS_KM"):
            config.geolocation.cluster_radius_km = float(v)
        if v := os.getenv("ANOMALY_CLUSTER_MAX_POINTS"):
            config.geolocation.cluster_max_points = int(v)

        # Behavioral overrides
        if v := os.getenv("ANOMALY_ADAPTIVE_SENSITIVITY"):
            config.behavioral.adaptive_sensitivity = float(v)
        if v := os.getenv("ANOMALY_DRIFT_THRESHOLD"):
            config.behavioral.drift_threshold = float(v)

        config.__post_init__()
        return config


# Module-level default instance
default_config = AnomalyConfig()
