"""Tests for the anomaly detection orchestrator."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.domains.anomaly.config import AnomalyConfig, OrchestrationConfig
from src.domains.anomaly.counters import InMemoryCounterStore
from src.domains.anomaly.events import InMemoryEventSink
from src.domains.anomaly.ip_reputation import IpReputationService, StaticIpIntelligenceProvider
from src.domains.anomaly.models import (
    AnomalyType,
    BehavioralProfile,
    DetectionMethod,
    IpIntelligence,
    Severity,
    TransactionContext,
)
from src.domains.anomaly.orchestrator import (
    AnomalyDetectionOrchestrator,
    calculate_confidence,
    hash_ip,
)
from src.domains.anomaly.repository import InMemoryDetectionStore, InMemoryProfileRepository

IP = "198.51.100.23"
NEW_YORK = (40.7128, -74.0060)
LONDON = (51.5074, -0.1278)


def _config(**orchestration) -> AnomalyConfig:
    return AnomalyConfig(orchestration=OrchestrationConfig(enabled=True, **orchestration))


CONFIG = _config()


def _make_profile(**kwargs) -> BehavioralProfile:
    defaults = {
        "user_id": 1,
        "is_established": True,
        "avg_transaction_amount": 1000.0,
        "transaction_amount_std_dev": 200.0,
        "avg_daily_transaction_count": 4.0,
        "avg_monthly_transaction_count": 12.0,
        "max_daily_volume": 5000.0,
        "days_since_first_transaction": 120,
        "total_transaction_count": 480,
    }
    defaults.update(kwargs)
    return BehavioralProfile(**defaults)


class _SlowProvider:
    async def get_ip_data(self, ip: str) -> IpIntelligence | None:
        await asyncio.sleep(5)
        return None


def _make_orchestrator(
    config: AnomalyConfig = CONFIG,
    profiles=None,
    ip_data: dict | None = None,
    provider=None,
    detections=None,
    **kwargs,
):
    counters = InMemoryCounterStore()
    ip_reputation = IpReputationService(
        provider or StaticIpIntelligenceProvider(ip_data or {}), counters, config.ip_reputation
    )
    store = detections if detections is not None else InMemoryDetectionStore()
    sink = InMemoryEventSink()
    orchestrator = AnomalyDetectionOrchestrator(
        profiles=profiles if profiles is not None else InMemoryProfileRepository([_make_profile()]),
        counters=counters,
        ip_reputation=ip_reputation,
        detections=store,
        events=sink,
        config=config,
        **kwargs,
    )
    return orchestrator, store, sink


def _by_type(result, anomaly_type: AnomalyType):
    return next((a for a in result.anomalies if a.anomaly_type == anomaly_type), None)


class TestDisabled:
    @pytest.mark.asyncio
    async def test_disabled_returns_empty_without_side_effects(self):
        counters = AsyncMock()
        profiles = AsyncMock()
        detections = AsyncMock()
        orchestrator = AnomalyDetectionOrchestrator(
            profiles=profiles,
            counters=counters,
            ip_reputation=AsyncMock(),
            detections=detections,
            events=AsyncMock(),
            config=AnomalyConfig(),
        )

        result = await orchestrator.detect_anomalies({"amount": 1e9, "user_id": 1}, "txn-1", "transfer", 1)

        assert result.anomalies == []
        assert result.highest_score == 0.0
        assert not result.has_critical
        assert result.persisted == 0
        profiles.get.assert_not_awaited()
        counters.record_transaction.assert_not_awaited()
        detections.append.assert_not_awaited()


class TestStatisticalAnomaly:
    @pytest.mark.asyncio
    async def test_large_amount_flagged_and_persisted(self):
        orchestrator, store, sink = _make_orchestrator()

        result = await orchestrator.detect_anomalies(
            {"amount": 2500, "hour_of_day": 14, "day_of_week": 2}, "txn-1", "transfer", 1
        )

        statistical = _by_type(result, AnomalyType.STATISTICAL)
        assert statistical is not None
        assert statistical.detection_method == DetectionMethod.Z_SCORE
        assert statistical.score == 100.0
        assert statistical.severity == Severity.CRITICAL
        assert result.has_critical
        assert result.highest_score == 100.0
        assert result.failed_detectors == []

        recorded = [d for d in store.detections if d.anomaly_type == AnomalyType.STATISTICAL]
        assert len(recorded) == 1
        assert recorded[0].transaction_id == "txn-1"
        assert recorded[0].explanation["type"] == "Statistical"
        assert recorded[0].context_snapshot["amount"] == 2500
        assert recorded[0].model_version == "anomaly-v1"

    @pytest.mark.asyncio
    async def test_amount_breach_gives_low_behavioral_candidate(self):
        orchestrator, store, _ = _make_orchestrator()

        result = await orchestrator.detect_anomalies({"amount": 2500}, "txn-1", "transfer", 1)

        behavioral = _by_type(result, AnomalyType.BEHAVIORAL)
        assert behavioral is not None
        assert behavioral.score == 25.0
        assert behavioral.detection_method == DetectionMethod.ADAPTIVE_THRESHOLD
        # Below the persistence threshold
        assert all(d.anomaly_type != AnomalyType.BEHAVIORAL for d in store.detections)

    @pytest.mark.asyncio
    async def test_behavioral_run_saves_profile(self):
        profiles = InMemoryProfileRepository([_make_profile()])
        orchestrator, _, _ = _make_orchestrator(profiles=profiles)

        await orchestrator.detect_anomalies({"amount": 1000}, "txn-1", "transfer", 1)

        saved = await profiles.get(1)
        assert saved.adaptive_thresholds is not None
        assert saved.user_segment is not None
        assert saved.last_drift_check_at is not None

    @pytest.mark.asyncio
    async def test_user_id_taken_from_context(self):
        orchestrator, store, _ = _make_orchestrator()
        await orchestrator.detect_anomalies({"amount": 2500, "user_id": 1}, "txn-1")
        assert store.detections[0].user_id == 1

    @pytest.mark.asyncio
    async def test_missing_amount_not_scored_as_zero(self):
        times = [0.0] * 24
        times[12] = 100.0
        days = [0.0] * 7
        days[2] = 100.0
        profile = _make_profile(typical_transaction_times=times, typical_transaction_days=days)
        orchestrator, store, _ = _make_orchestrator(profiles=InMemoryProfileRepository([profile]))
        context = {
            "hour_of_day": 12,
            "day_of_week": 2,
            "transaction_history": [500.0 + 10 * i for i in range(30)],
        }

        result = await orchestrator.detect_anomalies(context, "txn-1", "transfer", 1)
        assert _by_type(result, AnomalyType.STATISTICAL) is None
        assert all(d.anomaly_type != AnomalyType.STATISTICAL for d in store.detections)

        zero = await orchestrator.detect_anomalies({**context, "amount": 0}, "txn-2", "transfer", 1)
        statistical = _by_type(zero, AnomalyType.STATISTICAL)
        assert statistical is not None
        assert statistical.details["iqr"]["detected"] is True


class TestPersistence:
    @pytest.mark.asyncio
    async def test_retry_is_idempotent(self):
        orchestrator, store, sink = _make_orchestrator()
        context = {"amount": 2500}

        first = await orchestrator.detect_anomalies(context, "txn-1", "transfer", 1)
        second = await orchestrator.detect_anomalies(context, "txn-1", "transfer", 1)

        assert first.persisted >= 1
        assert second.persisted == 0
        assert len(store.detections) == first.persisted
        assert len(sink.events) == first.persisted

    @pytest.mark.asyncio
    async def test_one_event_per_persisted_detection(self):
        orchestrator, store, sink = _make_orchestrator()

        result = await orchestrator.detect_anomalies({"amount": 2500}, "txn-1", "transfer", 1)

        assert len(sink.events) == result.persisted == len(store.detections)
        event = sink.events[0]
        assert event.detection_id == store.detections[0].detection_id
        assert event.transaction_id == "txn-1"
        assert event.event_type == "anomaly-detected"

    @pytest.mark.asyncio
    async def test_score_at_threshold_not_persisted(self):
        # provider risk 80 * 0.5 = 40.0
        orchestrator, store, sink = _make_orchestrator(
            profiles=InMemoryProfileRepository(), ip_data={IP: {"risk_score": 80}}
        )

        result = await orchestrator.detect_anomalies({"ip": IP}, "txn-1")

        device = _by_type(result, AnomalyType.DEVICE)
        assert device.score == 40.0
        assert device.severity == Severity.MEDIUM
        assert result.persisted == 0
        assert store.detections == []
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_store_failure_keeps_candidates(self):
        detections = AsyncMock()
        detections.append.side_effect = RuntimeError("db down")
        orchestrator, _, sink = _make_orchestrator(detections=detections)

        result = await orchestrator.detect_anomalies({"amount": 2500}, "txn-1", "transfer", 1)

        assert _by_type(result, AnomalyType.STATISTICAL) is not None
        assert result.persisted == 0
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_publish_failure_still_counts_persisted(self):
        orchestrator, store, _ = _make_orchestrator()
        orchestrator._events = AsyncMock()
        orchestrator._events.publish.side_effect = RuntimeError("kafka down")

        result = await orchestrator.detect_anomalies({"amount": 2500}, "txn-1", "transfer", 1)

        assert result.persisted == len(store.detections) >= 1

    @pytest.mark.asyncio
    async def test_failed_publish_reemitted_on_retry(self):
        orchestrator, store, _ = _make_orchestrator(profiles=InMemoryProfileRepository())
        orchestrator._events = AsyncMock()
        orchestrator._events.publish.side_effect = [RuntimeError("kafka down"), None]
        context = {
            "last_lat": NEW_YORK[0],
            "last_lon": NEW_YORK[1],
            "lat": LONDON[0],
            "lon": LONDON[1],
            "time_diff_seconds": 3600,
        }

        first = await orchestrator.detect_anomalies(context, "txn-geo")
        second = await orchestrator.detect_anomalies(context, "txn-geo")
        third = await orchestrator.detect_anomalies(context, "txn-geo")

        assert (first.persisted, second.persisted, third.persisted) == (1, 0, 0)
        assert len(store.detections) == 1
        published = [c.args[0].detection_id for c in orchestrator._events.publish.await_args_list]
        assert published == [store.detections[0].detection_id] * 2

    @pytest.mark.asyncio
    async def test_detection_id_stable_per_transaction_and_type(self):
        store = InMemoryDetectionStore()
        first, _, _ = _make_orchestrator(detections=store)
        await first.detect_anomalies({"amount": 2500}, "txn-1", "transfer", 1)
        detection_id = store.detections[0].detection_id

        other_store = InMemoryDetectionStore()
        second, _, _ = _make_orchestrator(detections=other_store)
        await second.detect_anomalies({"amount": 2500}, "txn-1", "transfer", 1)
        assert other_store.detections[0].detection_id == detection_id


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failing_detector_is_contained(self):
        statistical = MagicMock()
        statistical.analyze.side_effect = RuntimeError("boom")
        orchestrator, _, _ = _make_orchestrator(statistical=statistical)

        result = await orchestrator.detect_anomalies({"amount": 2500}, "txn-1", "transfer", 1)

        assert result.failed_detectors == ["statistical"]
        assert _by_type(result, AnomalyType.STATISTICAL) is None
        assert _by_type(result, AnomalyType.BEHAVIORAL) is not None

    @pytest.mark.asyncio
    async def test_slow_detector_times_out(self):
        orchestrator, _, _ = _make_orchestrator(
            config=_config(detector_timeout_seconds=0.05), provider=_SlowProvider()
        )

        result = await orchestrator.detect_anomalies({"amount": 2500, "ip": IP}, "txn-1", "transfer", 1)

        assert result.failed_detectors == ["device"]
        assert _by_type(result, AnomalyType.STATISTICAL) is not None

    @pytest.mark.asyncio
    async def test_profile_lookup_failure_degrades(self):
        profiles = AsyncMock()
        profiles.get.side_effect = ConnectionError("db down")
        orchestrator, _, _ = _make_orchestrator(profiles=profiles)

        result = await orchestrator.detect_anomalies({"amount": 2500}, "txn-1", "transfer", 1)

        assert result.failed_detectors == []
        assert _by_type(result, AnomalyType.BEHAVIORAL) is None
        assert _by_type(result, AnomalyType.STATISTICAL) is None

    @pytest.mark.asyncio
    async def test_profile_save_failure_keeps_candidate(self):
        profiles = AsyncMock()
        profiles.get.return_value = _make_profile()
        profiles.save.side_effect = ConnectionError("db down")
        orchestrator, _, _ = _make_orchestrator(profiles=profiles)

        result = await orchestrator.detect_anomalies({"amount": 2500}, "txn-1", "transfer", 1)

        assert _by_type(result, AnomalyType.BEHAVIORAL) is not None
        assert "behavioral" not in result.failed_detectors

    @pytest.mark.asyncio
    async def test_empty_context(self):
        orchestrator, store, _ = _make_orchestrator(profiles=InMemoryProfileRepository())
        result = await orchestrator.detect_anomalies(None)
        assert result.anomalies == []
        assert store.detections == []


class TestMalformedContext:
    @pytest.mark.parametrize(
        "context",
        [
            {"amount": 10, "location_history": [{"lat": 1.0}]},
            {"amount": 10, "transaction_history": ["n/a"]},
            {"amount": 10, "hour_of_day": 14.5},
            {"amount": 10, "device_data": "not-a-mapping"},
            ["amount", 10],
        ],
    )
    @pytest.mark.asyncio
    async def test_bad_fields_do_not_raise(self, context):
        orchestrator, _, _ = _make_orchestrator()

        result = await orchestrator.detect_anomalies(context, "txn-1", "transfer", 1)

        assert result.failed_detectors == []
        assert all(a.anomaly_type != AnomalyType.GEOLOCATION for a in result.anomalies)

    @pytest.mark.asyncio
    async def test_good_fields_survive_a_bad_one(self):
        orchestrator, _, _ = _make_orchestrator()

        result = await orchestrator.detect_anomalies(
            {"amount": 2500, "hour_of_day": 14.5}, "txn-1", "transfer", 1
        )

        statistical = _by_type(result, AnomalyType.STATISTICAL)
        assert statistical is not None
        assert statistical.detection_method == DetectionMethod.Z_SCORE


class TestGeolocation:
    @pytest.mark.asyncio
    async def test_impossible_travel(self):
        orchestrator, store, _ = _make_orchestrator(profiles=InMemoryProfileRepository())
        context = {
            "last_lat": NEW_YORK[0],
            "last_lon": NEW_YORK[1],
            "lat": LONDON[0],
            "lon": LONDON[1],
            "time_diff_seconds": 3600,
        }

        result = await orchestrator.detect_anomalies(context, "txn-geo")

        geo = _by_type(result, AnomalyType.GEOLOCATION)
        assert geo.detection_method == DetectionMethod.IMPOSSIBLE_TRAVEL
        assert geo.score == 85.0
        assert geo.severity == Severity.CRITICAL
        assert geo.details["impossible_travel"]["distance_km"] > 5000
        assert store.detections[0].anomaly_type == AnomalyType.GEOLOCATION

    @pytest.mark.asyncio
    async def test_plausible_travel_not_flagged(self):
        orchestrator, _, _ = _make_orchestrator(profiles=InMemoryProfileRepository())
        context = {
            "last_lat": NEW_YORK[0],
            "last_lon": NEW_YORK[1],
            "lat": LONDON[0],
            "lon": LONDON[1],
            "time_diff_seconds": 8 * 3600,
        }
        result = await orchestrator.detect_anomalies(context, "txn-geo")
        assert _by_type(result, AnomalyType.GEOLOCATION) is None

    @pytest.mark.asyncio
    async def test_far_from_usual_clusters(self):
        orchestrator, _, _ = _make_orchestrator(profiles=InMemoryProfileRepository())
        history = [{"lat": NEW_YORK[0] + i * 0.01, "lon": NEW_YORK[1]} for i in range(5)]
        context = {"lat": LONDON[0], "lon": LONDON[1], "location_history": history}

        result = await orchestrator.detect_anomalies(context, "txn-geo")

        geo = _by_type(result, AnomalyType.GEOLOCATION)
        assert geo.detection_method == DetectionMethod.GEO_CLUSTERING
        assert geo.score == 80.0


class TestDevice:
    @pytest.mark.asyncio
    async def test_risky_ip_persisted_without_raw_address(self):
        orchestrator, store, _ = _make_orchestrator(
            profiles=InMemoryProfileRepository(),
            ip_data={IP: {"is_vpn": True, "is_proxy": True, "country": "NL"}},
        )

        result = await orchestrator.detect_anomalies({"ip": IP}, "txn-ip")

        device = _by_type(result, AnomalyType.DEVICE)
        assert device.detection_method == DetectionMethod.IP_REPUTATION
        assert device.score == 55.0
        assert not device.detected
        assert device.details["ip_hash"] == hash_ip(IP)

        detection = store.detections[0]
        assert IP not in json.dumps(detection.model_dump(mode="json"))
        assert detection.context_snapshot["ip_hash"] == hash_ip(IP)

    @pytest.mark.asyncio
    async def test_device_data_ip_used(self):
        orchestrator, _, _ = _make_orchestrator(
            profiles=InMemoryProfileRepository(), ip_data={IP: {"is_tor": True}}
        )
        result = await orchestrator.detect_anomalies({"device_data": {"ip": IP}}, "txn-ip")
        assert _by_type(result, AnomalyType.DEVICE).score == 40.0

    @pytest.mark.asyncio
    async def test_clean_ip_no_candidate(self):
        orchestrator, _, _ = _make_orchestrator(
            profiles=InMemoryProfileRepository(), ip_data={IP: {"country": "US"}}
        )
        result = await orchestrator.detect_anomalies({"ip": IP}, "txn-ip")
        assert result.anomalies == []


class TestVelocity:
    @pytest.mark.asyncio
    async def test_rapid_transactions_flagged(self):
        orchestrator, _, _ = _make_orchestrator(profiles=InMemoryProfileRepository())

        result = None
        for i in range(6):
            result = await orchestrator.detect_anomalies({"amount": 10}, f"txn-{i}", "transfer", 9)

        velocity = _by_type(result, AnomalyType.VELOCITY)
        assert velocity.detection_method == DetectionMethod.SLIDING_WINDOW
        # 6 / 5 * 40
        assert velocity.score == 48.0

    @pytest.mark.asyncio
    async def test_burst(self):
        orchestrator, _, _ = _make_orchestrator(profiles=InMemoryProfileRepository())
        context = {"hourly_transaction_count": 10, "avg_daily_transaction_count": 24}

        result = await orchestrator.detect_anomalies(context, "txn-b")

        velocity = _by_type(result, AnomalyType.VELOCITY)
        assert velocity.detection_method == DetectionMethod.BURST_DETECTION
        assert velocity.score == 80.0


class TestSanitizeContext:
    def test_clamps_and_floors(self):
        orchestrator, _, _ = _make_orchestrator()
        ctx = orchestrator.sanitize_context(
            TransactionContext(
                lat=120.0, lon=-200.0, last_lat=-95.0, amount=-5.0, time_diff_seconds=-10
            )
        )
        assert ctx.lat == 90.0
        assert ctx.lon == -180.0
        assert ctx.last_lat == -90.0
        assert ctx.amount == 0.0
        assert ctx.time_diff_seconds == 0.0

    def test_bounds_history(self):
        orchestrator, _, _ = _make_orchestrator()
        ctx = orchestrator.sanitize_context(
            TransactionContext(transaction_history=[float(i) for i in range(1500)])
        )
        assert len(ctx.transaction_history) == 1000
        assert ctx.transaction_history[0] == 500.0

    def test_untouched_context_returned_as_is(self):
        orchestrator, _, _ = _make_orchestrator()
        ctx = TransactionContext(amount=10.0, lat=1.0)
        assert orchestrator.sanitize_context(ctx) is ctx


class TestConfidence:
    @pytest.mark.parametrize(
        ("score", "expected"), [(85, 0.95), (80, 0.95), (65, 0.85), (45, 0.70), (10, 0.50)]
    )
    def test_score_bands(self, score, expected):
        assert calculate_confidence(score, {}) == expected

    def test_agreeing_signals_boost(self):
        signals = {"a": {"x": 1}, "b": {"y": 1}, "c": {"z": 1}}
        assert calculate_confidence(65, signals) == pytest.approx(0.90)

    def test_capped_at_one(self):
        signals = {"a": {"x": 1}, "b": {"y": 1}, "c": {"z": 1}}
        assert calculate_confidence(95, signals) == 1.0
