"""Tests for anomaly domain models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from src.domains.anomaly.models import (
    AnomalyCandidate,
    AnomalyDetection,
    AnomalyType,
    BehavioralProfile,
    DetectionMethod,
    Severity,
    TransactionContext,
    WindowEvaluation,
    calculate_severity,
)


class TestSeverity:
    @pytest.mark.parametrize(
        ("score", "expected"),
        [
            (-10, Severity.LOW),
            (0, Severity.LOW),
            (39.99, Severity.LOW),
            (40, Severity.MEDIUM),
            (59.99, Severity.MEDIUM),
            (60, Severity.HIGH),
            (79.99, Severity.HIGH),
            (80, Severity.CRITICAL),
            (100, Severity.CRITICAL),
            (150, Severity.CRITICAL),
        ],
    )
    def test_buckets(self, score, expected):
        assert calculate_severity(score) == expected

    def test_candidate_severity_follows_score(self):
        candidate = AnomalyCandidate(
            anomaly_type=AnomalyType.VELOCITY,
            detection_method=DetectionMethod.BURST_DETECTION,
            score=61.0,
        )
        assert candidate.severity == Severity.HIGH

    def test_candidate_score_bounded(self):
        with pytest.raises(ValidationError):
            AnomalyCandidate(
                anomaly_type=AnomalyType.VELOCITY,
                detection_method=DetectionMethod.BURST_DETECTION,
                score=101.0,
            )


class TestTransactionContext:
    def test_empty_mapping(self):
        ctx = TransactionContext.from_mapping(None)
        assert ctx.amount is None
        assert ctx.transaction_history == []
        assert ctx.location_history == []

    def test_unknown_keys_ignored(self):
        ctx = TransactionContext.from_mapping({"amount": "12.5", "merchant": "x"})
        assert ctx.amount == 12.5

    def test_history_coercion(self):
        ctx = TransactionContext.from_mapping(
            {"transaction_history": [10, {"amount": "20"}, {"status": "x"}, None]}
        )
        assert ctx.transaction_history == [10.0, 20.0]

    def test_location_aliases(self):
        ctx = TransactionContext.from_mapping(
            {"location_history": [{"latitude": 1.5, "longitude": 2.5}, {"lat": 3, "lon": 4}]}
        )
        assert [(p.lat, p.lon) for p in ctx.location_history] == [(1.5, 2.5), (3.0, 4.0)]

    def test_incomplete_location_points_skipped(self):
        ctx = TransactionContext.from_mapping(
            {"location_history": [{"lat": 1.0}, "nowhere", {"lat": 3, "lon": 4}]}
        )
        assert [(p.lat, p.lon) for p in ctx.location_history] == [(3.0, 4.0)]

    def test_unusable_history_items_skipped(self):
        ctx = TransactionContext.from_mapping(
            {"transaction_history": ["n/a", float("nan"), "15", {"amount": "inf"}, 30]}
        )
        assert ctx.transaction_history == [15.0, 30.0]

    def test_non_list_histories_become_empty(self):
        ctx = TransactionContext.from_mapping({"transaction_history": "100", "location_history": 7})
        assert ctx.transaction_history == []
        assert ctx.location_history == []

    def test_uncoercible_fields_dropped(self):
        ctx = TransactionContext.from_mapping(
            {"amount": 250, "hour_of_day": 14.5, "day_of_week": "friday", "ip": "1.1.1.1"}
        )
        assert ctx.hour_of_day is None
        assert ctx.day_of_week is None
        assert ctx.amount == 250.0
        assert ctx.ip == "1.1.1.1"

    def test_effective_ip_prefers_top_level(self):
        ctx = TransactionContext.from_mapping({"ip": "1.1.1.1", "device_data": {"ip": "2.2.2.2"}})
        assert ctx.effective_ip == "1.1.1.1"
        assert TransactionContext.from_mapping({"device_data": {"ip": "2.2.2.2"}}).effective_ip == "2.2.2.2"
        assert TransactionContext().effective_ip is None

    def test_travel_points_require_all_fields(self):
        ctx = TransactionContext(lat=1, lon=1, last_lat=2, last_lon=2)
        assert not ctx.has_travel_points
        assert ctx.model_copy(update={"time_diff_seconds": 0.0}).has_travel_points


class TestProfile:
    def test_distribution_lookup_out_of_range(self):
        profile = BehavioralProfile(user_id=1, typical_transaction_times=[50.0, 50.0])
        assert profile.hour_share(1) == 50.0
        assert profile.hour_share(5) == 0.0
        assert profile.day_share(0) == 0.0


class TestWindowEvaluation:
    def test_breach_ratio_uses_tightest_limit(self):
        w = WindowEvaluation(exceeded=True, count=3, volume=30_000.0, max_count=5, max_volume=10_000.0)
        assert w.breach_ratio == 3.0

    def test_not_exceeded(self):
        w = WindowEvaluation(count=3, volume=100.0, max_count=5, max_volume=10_000.0)
        assert w.breach_ratio == 0.0


class TestDetection:
    def test_immutable(self):
        detection = AnomalyDetection(
            detection_id="d-1",
            anomaly_type=AnomalyType.DEVICE,
            detection_method=DetectionMethod.IP_REPUTATION,
            score=70.0,
            confidence=0.85,
            severity=Severity.HIGH,
            model_version="anomaly-v1",
            detected_at=datetime(2026, 1, 1, tzinfo=UTC),
        )
        with pytest.raises(ValidationError):
            detection.score = 10.0
