"""Anomaly detection orchestrator.

Runs every detector family against one transaction, each under its own
timeout and failure boundary, fuses the results into AnomalyCandidates,
persists the significant ones and publishes an event per new detection.
A detection call never raises because a collaborator failed: the worst case
is an empty DetectionResult, which means "no signal", not "clean".
"""

import asyncio
import hashlib
import uuid
from collections.abc import Awaitable, Mapping
from datetime import UTC, datetime
from typing import Any

import structlog

from .behavioral import BehavioralAnalyzer
from .config import AnomalyConfig, default_config
from .counters import CounterStore
from .events import EventSink, build_event
from .geo import GeoMath
from .ip_reputation import IpReputationService
from .models import (
    AnomalyCandidate,
    AnomalyDetection,
    AnomalyType,
    BehavioralProfile,
    DetectionMethod,
    DetectionResult,
    DetectorResult,
    Severity,
    TransactionContext,
)
from .repository import DetectionStore, ProfileRepository
from .statistical import StatisticalAnalyzer
from .velocity import VelocityRuleEngine

logger = structlog.get_logger()

_STATISTICAL_METHODS = {
    "z_score": DetectionMethod.Z_SCORE,
    "iqr": DetectionMethod.IQR,
    "isolation_forest": DetectionMethod.ISOLATION_FOREST,
    "lof": DetectionMethod.LOF,
    "seasonal": DetectionMethod.SEASONAL,
}

_IMPOSSIBLE_TRAVEL_SCORE = 85.0
_CROSS_ACCOUNT_SCORE = 60.0
# Detection ids whose event publish failed, kept for re-emission on retry
_MAX_UNPUBLISHED = 10_000


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def calculate_confidence(score: float, signals: Mapping[str, Any]) -> float:
    """Confidence from score strength, nudged up when several signals agree."""
    if score >= 80:
        confidence = 0.95
    elif score >= 60:
        confidence = 0.85
    elif score >= 40:
        confidence = 0.70
    else:
        confidence = 0.50

    supporting = sum(1 for v in signals.values() if isinstance(v, Mapping) and v)
    if supporting >= 3:
        confidence = min(confidence + 0.05, 1.0)
    return confidence


def hash_ip(ip: str) -> str:
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()


class AnomalyDetectionOrchestrator:
    """Fan-out/fan-in coordinator over the anomaly detector families."""

    def __init__(
        self,
        profiles: ProfileRepository,
        counters: CounterStore,
        ip_reputation: IpReputationService,
        detections: DetectionStore,
        events: EventSink,
        config: AnomalyConfig | None = None,
        statistical: StatisticalAnalyzer | None = None,
        behavioral: BehavioralAnalyzer | None = None,
        velocity: VelocityRuleEngine | None = None,
        geo: GeoMath | None = None,
    ) -> None:
        self._config = config or default_config
        self._profiles = profiles
        self._ip_reputation = ip_reputation
        self._detections = detections
        self._events = events
        self._statistical = statistical or StatisticalAnalyzer(self._config.statistical)
        self._behavioral = behavioral or BehavioralAnalyzer(self._config.behavioral)
        self._velocity = velocity or VelocityRuleEngine(counters, self._config.velocity)
        self._geo = geo or GeoMath(self._config.geolocation)
        self._unpublished: dict[str, None] = {}

    async def detect_anomalies(
        self,
        context: Mapping[str, Any] | TransactionContext | None,
        transaction_id: str | None = None,
        transaction_type: str | None = None,
        user_id: int | None = None,
    ) -> DetectionResult:
        cfg = self._config.orchestration
        if not cfg.enabled:
            return DetectionResult()

        log = logger.bind(transaction_id=transaction_id, user_id=user_id)
        ctx = self.sanitize_context(self._build_context(context, log))
        if user_id is None:
            user_id = ctx.user_id
            log = log.bind(user_id=user_id)

        profile = await self._load_profile(user_id, log)
        await self._record_sightings(ctx, user_id, transaction_id, log)

        detectors: dict[str, Awaitable[AnomalyCandidate | None]] = {
            "statistical": self._run_statistical(ctx, profile),
            "behavioral": self._run_behavioral(ctx, profile),
            "velocity": self._run_velocity(ctx, user_id),
            "geolocation": self._run_geolocation(ctx),
            "device": self._run_device(ctx),
        }
        outcomes = await asyncio.gather(
            *(self._supervise(name, run, log) for name, run in detectors.items())
        )

        anomalies: list[AnomalyCandidate] = []
        failed: list[str] = []
        for name, (ok, candidate) in zip(detectors, outcomes, strict=True):
            if not ok:
                failed.append(name)
            elif candidate is not None:
                anomalies.append(candidate)

        result = DetectionResult(
            anomalies=anomalies,
            highest_score=max((c.score for c in anomalies), default=0.0),
            has_critical=any(c.severity == Severity.CRITICAL for c in anomalies),
            failed_detectors=failed,
        )
        result.persisted = await self._persist(
            anomalies, ctx, transaction_id, transaction_type, user_id, log
        )

        log.info(
            "anomaly_detection_completed",
            candidates=len(anomalies),
            highest_score=result.highest_score,
            has_critical=result.has_critical,
            persisted=result.persisted,
            failed_detectors=failed,
        )
        return result

    # --- Input handling ---

    @staticmethod
    def _build_context(
        context: Mapping[str, Any] | TransactionContext | None, log: Any
    ) -> TransactionContext:
        if isinstance(context, TransactionContext):
            return context
        try:
            return TransactionContext.from_mapping(context)
        except Exception:
            log.warning("transaction_context_unusable", exc_info=True)
            return TransactionContext()

    def sanitize_context(self, context: TransactionContext) -> TransactionContext:
        """Clamp coordinates, floor negatives at zero and bound history sizes."""
        updates: dict[str, Any] = {}
        for name, bound in (("lat", 90.0), ("last_lat", 90.0), ("lon", 180.0), ("last_lon", 180.0)):
            value = getattr(context, name)
            if value is not None and abs(value) > bound:
                updates[name] = _clamp(value, -bound, bound)

        if context.time_diff_seconds is not None and context.time_diff_seconds < 0:
            updates["time_diff_seconds"] = 0.0
        if context.amount is not None and context.amount < 0:
            updates["amount"] = 0.0

        max_points = self._config.geolocation.cluster_max_points
        if len(context.location_history) > max_points:
            updates["location_history"] = context.location_history[-max_points:]
        max_history = self._config.statistical.max_history_size
        if len(context.transaction_history) > max_history:
            updates["transaction_history"] = context.transaction_history[-max_history:]

        return context.model_copy(update=updates) if updates else context

    async def _load_profile(self, user_id: int | None, log: Any) -> BehavioralProfile | None:
        if user_id is None:
            return None
        try:
            return await asyncio.wait_for(
                self._profiles.get(user_id), self._config.orchestration.lookup_timeout_seconds
            )
        except Exception:
            log.warning("behavioral_profile_lookup_failed", exc_info=True)
            return None

    async def _record_sightings(
        self,
        ctx: TransactionContext,
        user_id: int | None,
        transaction_id: str | None,
        log: Any,
    ) -> None:
        if user_id is None:
            return
        timeout = self._config.orchestration.lookup_timeout_seconds
        try:
            if ctx.amount is not None:
                await asyncio.wait_for(
                    self._velocity.record_transaction(user_id, ctx.amount, transaction_id), timeout
                )
            await asyncio.wait_for(self._velocity.record_identifiers(ctx, user_id), timeout)
        except Exception:
            log.warning("velocity_recording_failed", exc_info=True)

    # --- Supervision ---

    async def _supervise(
        self, name: str, run: Awaitable[AnomalyCandidate | None], log: Any
    ) -> tuple[bool, AnomalyCandidate | None]:
        """Run one detector under its timeout. Failures become (False, None)."""
        try:
            candidate = await asyncio.wait_for(
                run, self._config.orchestration.detector_timeout_seconds
            )
        except Exception:
            log.warning("anomaly_detector_failed", detector=name, exc_info=True)
            return False, None
        return True, candidate

    # --- Detectors ---

    async def _run_statistical(
        self, ctx: TransactionContext, profile: BehavioralProfile | None
    ) -> AnomalyCandidate | None:
        results: dict[str, DetectorResult] = self._statistical.analyze(ctx, profile)
        seasonal = self._statistical.seasonal_decomposition(ctx, profile)
        if seasonal.detected:
            results["seasonal"] = seasonal

        # Only methods that actually flagged the transaction compete for the score
        flagged = {name: r for name, r in results.items() if r.detected and r.score > 0}
        if not flagged:
            return None
        best_name, best = max(flagged.items(), key=lambda item: item[1].score)
        score = round(min(best.score, 100.0), 2)
        details = {name: r.model_dump() for name, r in results.items()}

        return AnomalyCandidate(
            anomaly_type=AnomalyType.STATISTICAL,
            detection_method=_STATISTICAL_METHODS[best_name],
            score=score,
            detected=True,
            confidence=calculate_confidence(score, details),
            details=details,
        )

    async def _run_behavioral(
        self, ctx: TransactionContext, profile: BehavioralProfile | None
    ) -> AnomalyCandidate | None:
        if profile is None or not profile.is_established:
            return None

        snapshot = profile.model_copy(deep=True)
        thresholds = self._behavioral.compute_adaptive_thresholds(snapshot)
        breaches = self._behavioral.detect_threshold_breaches(ctx, thresholds)
        drift = self._behavioral.detect_drift(snapshot, ctx.transaction_history)
        self._behavioral.classify_segment(snapshot)
        await self._save_profile(snapshot)

        adaptive_score = min(len(breaches) * 25.0, 80.0)
        drift_score = drift.drift_score * 100.0
        score = round(min(max(adaptive_score, drift_score), 100.0), 2)
        if score <= 0:
            return None

        details = {
            "adaptive_thresholds": thresholds.model_dump(),
            "breaches": [b.model_dump() for b in breaches],
            "drift_detection": drift.model_dump(),
        }
        return AnomalyCandidate(
            anomaly_type=AnomalyType.BEHAVIORAL,
            detection_method=(
                DetectionMethod.ADAPTIVE_THRESHOLD
                if adaptive_score >= drift_score
                else DetectionMethod.DRIFT_DETECTION
            ),
            score=score,
            detected=bool(breaches) or drift.drifted,
            confidence=calculate_confidence(score, details),
            details=details,
        )

    async def _save_profile(self, profile: BehavioralProfile) -> None:
        try:
            await asyncio.wait_for(
                self._profiles.save(profile), self._config.orchestration.lookup_timeout_seconds
            )
        except Exception:
            logger.warning("behavioral_profile_save_failed", user_id=profile.user_id, exc_info=True)

    async def _run_velocity(
        self, ctx: TransactionContext, user_id: int | None
    ) -> AnomalyCandidate | None:
        windows = await self._velocity.evaluate_sliding_windows(ctx, user_id)
        burst = self._velocity.detect_burst(ctx)
        cross_account = await self._velocity.detect_cross_account_activity(ctx, user_id)

        window_score = max((w.breach_ratio * 40.0 for w in windows.values()), default=0.0)
        burst_score = min(burst.burst_ratio * 30.0, 80.0) if burst.burst_detected else 0.0
        cross_score = _CROSS_ACCOUNT_SCORE if cross_account.detected else 0.0

        scores = {
            DetectionMethod.SLIDING_WINDOW: window_score,
            DetectionMethod.BURST_DETECTION: burst_score,
            DetectionMethod.CROSS_ACCOUNT: cross_score,
        }
        method, best = max(scores.items(), key=lambda item: item[1])
        if best <= 0:
            return None

        score = round(min(best, 100.0), 2)
        details = {
            "sliding_windows": {label: w.model_dump() for label, w in windows.items()},
            "burst_detection": burst.model_dump(),
            "cross_account": cross_account.model_dump(),
        }
        return AnomalyCandidate(
            anomaly_type=AnomalyType.VELOCITY,
            detection_method=method,
            score=score,
            detected=True,
            confidence=calculate_confidence(score, details),
            details=details,
        )

    async def _run_geolocation(self, ctx: TransactionContext) -> AnomalyCandidate | None:
        best = 0.0
        method: DetectionMethod | None = None
        details: dict[str, Any] = {}

        if ctx.has_travel_points:
            travel = self._geo.is_impossible_travel(
                ctx.last_lat, ctx.last_lon, ctx.lat, ctx.lon, ctx.time_diff_seconds
            )
            details["impossible_travel"] = travel.model_dump()
            if travel.impossible:
                best = _IMPOSSIBLE_TRAVEL_SCORE
                method = DetectionMethod.IMPOSSIBLE_TRAVEL

        min_points = self._config.geolocation.cluster_min_points
        if ctx.lat is not None and ctx.lon is not None and len(ctx.location_history) >= min_points:
            clustering = self._geo.cluster_locations(ctx.location_history)
            if clustering.clusters:
                nearest = self._geo.distance_to_nearest_cluster(ctx.lat, ctx.lon, clustering.clusters)
                details["geo_clustering"] = {
                    "cluster_count": clustering.cluster_count,
                    "noise_points": len(clustering.noise),
                    "distance_check": nearest.model_dump(),
                }
                if nearest.outside_cluster:
                    reference = self._config.geolocation.outside_cluster_km
                    cluster_score = round(min(nearest.distance_km / reference * 40.0, 80.0), 2)
                    if cluster_score > best:
                        best = cluster_score
                        method = DetectionMethod.GEO_CLUSTERING

        if method is None or best <= 0:
            return None

        return AnomalyCandidate(
            anomaly_type=AnomalyType.GEOLOCATION,
            detection_method=method,
            score=round(best, 2),
            detected=True,
            confidence=calculate_confidence(best, details),
            details=details,
        )

    async def _run_device(self, ctx: TransactionContext) -> AnomalyCandidate | None:
        ip = ctx.effective_ip
        if not ip:
            return None

        reputation = await self._ip_reputation.assess_ip_reputation(ip)
        if reputation.risk_score <= 0:
            return None

        # Never persist the raw address
        details = reputation.model_dump()
        details["details"] = {k: v for k, v in details["details"].items() if k != "ip"}
        details["ip_hash"] = hash_ip(ip)

        score = round(reputation.risk_score, 2)
        return AnomalyCandidate(
            anomaly_type=AnomalyType.DEVICE,
            detection_method=DetectionMethod.IP_REPUTATION,
            score=score,
            detected=bool(reputation.details.get("exceeds_threshold")),
            confidence=calculate_confidence(score, {"ip_reputation": details}),
            details=details,
        )

    # --- Persistence ---

    async def _persist(
        self,
        anomalies: list[AnomalyCandidate],
        ctx: TransactionContext,
        transaction_id: str | None,
        transaction_type: str | None,
        user_id: int | None,
        log: Any,
    ) -> int:
        cfg = self._config.orchestration
        persisted = 0
        snapshot = self._context_snapshot(ctx)
        now = datetime.now(UTC)

        for candidate in anomalies:
            if candidate.score <= cfg.persistence_threshold:
                continue

            detection = AnomalyDetection(
                detection_id=self._detection_id(transaction_id, candidate.anomaly_type),
                transaction_id=transaction_id,
                transaction_type=transaction_type,
                user_id=user_id,
                anomaly_type=candidate.anomaly_type,
                detection_method=candidate.detection_method,
                score=candidate.score,
                confidence=candidate.confidence,
                severity=candidate.severity,
                features=candidate.details,
                explanation=self._explanation(candidate),
                context_snapshot=snapshot,
                model_version=cfg.model_version,
                detected_at=now,
            )

            try:
                inserted = await asyncio.wait_for(
                    self._detections.append(detection), cfg.detector_timeout_seconds
                )
            except Exception:
                log.exception(
                    "anomaly_detection_persist_failed",
                    anomaly_type=candidate.anomaly_type,
                    score=candidate.score,
                )
                continue

            if inserted:
                persisted += 1
            elif detection.detection_id in self._unpublished:
                log.info("anomaly_event_republishing", detection_id=detection.detection_id)
            else:
                log.info("anomaly_detection_already_recorded", anomaly_type=candidate.anomaly_type)
                continue

            await self._publish(detection, log)

        return persisted

    async def _publish(self, detection: AnomalyDetection, log: Any) -> None:
        """Publish the event. A failed id is retried when the same detection recurs."""
        try:
            await self._events.publish(build_event(detection))
        except Exception:
            log.exception(
                "anomaly_event_publish_failed",
                detection_id=detection.detection_id,
                anomaly_type=detection.anomaly_type,
            )
            self._unpublished[detection.detection_id] = None
            while len(self._unpublished) > _MAX_UNPUBLISHED:
                self._unpublished.pop(next(iter(self._unpublished)))
            return
        self._unpublished.pop(detection.detection_id, None)

    @staticmethod
    def _detection_id(transaction_id: str | None, anomaly_type: AnomalyType) -> str:
        # Retries of the same transaction map to the same id
        if transaction_id:
            return str(uuid.uuid5(uuid.NAMESPACE_URL, f"anomaly:{transaction_id}:{anomaly_type}"))
        return str(uuid.uuid4())

    @staticmethod
    def _explanation(candidate: AnomalyCandidate) -> dict[str, Any]:
        label = candidate.anomaly_type.value.capitalize()
        method = candidate.detection_method.value
        return {
            "summary": f"{label} anomaly detected via {method} with score {candidate.score}",
            "type": label,
            "method": method,
            "score": candidate.score,
        }

    @staticmethod
    def _context_snapshot(ctx: TransactionContext) -> dict[str, Any]:
        ip = ctx.effective_ip
        return {
            "amount": ctx.amount,
            "type": ctx.type,
            "ip_hash": hash_ip(ip) if ip else None,
            "ip_country": ctx.ip_country,
            "daily_transaction_count": ctx.daily_transaction_count,
            "daily_transaction_volume": ctx.daily_transaction_volume,
        }
