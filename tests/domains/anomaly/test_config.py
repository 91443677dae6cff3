"""Tests for anomaly configuration loading and validation."""

import pytest

from src.domains.anomaly.config import (
    AnomalyConfig,
    SlidingWindow,
    StatisticalConfig,
    VelocityConfig,
    default_config,
)


class TestDefaults:
    def test_disabled_by_default(self):
        assert default_config.orchestration.enabled is False
        assert default_config.orchestration.persistence_threshold == 40.0

    def test_default_windows(self):
        windows = {w.label: w for w in AnomalyConfig().velocity.sliding_windows}
        assert list(windows) == ["5m", "15m", "1h", "6h", "24h", "7d"]
        assert windows["1h"].max_count == 20
        assert windows["7d"].seconds == 7 * 24 * 3600

    def test_instances_do_not_share_state(self):
        a, b = AnomalyConfig(), AnomalyConfig()
        a.velocity.sliding_windows.pop()
        assert len(b.velocity.sliding_windows) == 6


class TestFromEnv:
    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("ANOMALY_ENABLED", "true")
        monkeypatch.setenv("ANOMALY_PERSISTENCE_THRESHOLD", "55")
        monkeypatch.setenv("ANOMALY_Z_SCORE_THRESHOLD", "2.5")
        monkeypatch.setenv("ANOMALY_CROSS_ACCOUNT_ENABLED", "1")
        monkeypatch.setenv("ANOMALY_MAX_TRAVEL_SPEED_KMH", "1000")

        config = AnomalyConfig.from_env()

        assert config.orchestration.enabled is True
        assert config.orchestration.persistence_threshold == 55.0
        assert config.statistical.z_score_threshold == 2.5
        assert config.velocity.cross_account.enabled is True
        assert config.geolocation.max_travel_speed_kmh == 1000.0

    def test_false_values(self, monkeypatch):
        monkeypatch.setenv("ANOMALY_ENABLED", "off")
        assert AnomalyConfig.from_env().orchestration.enabled is False

    def test_invalid_override_rejected(self, monkeypatch):
        monkeypatch.setenv("ANOMALY_LOF_NEIGHBORS", "0")
        with pytest.raises(ValueError, match="lof_neighbors"):
            AnomalyConfig.from_env()

    def test_from_env_leaves_default_untouched(self, monkeypatch):
        monkeypatch.setenv("ANOMALY_ENABLED", "true")
        AnomalyConfig.from_env()
        assert default_config.orchestration.enabled is False


class TestValidation:
    def test_duplicate_window_labels(self):
        windows = [SlidingWindow("1h", 60, 1, 1.0), SlidingWindow("1h", 120, 2, 2.0)]
        with pytest.raises(ValueError, match="unique"):
            AnomalyConfig(velocity=VelocityConfig(sliding_windows=windows))

    def test_lof_neighbors(self):
        with pytest.raises(ValueError):
            AnomalyConfig(statistical=StatisticalConfig(lof_neighbors=0))
