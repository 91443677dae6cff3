"""Tests for application configuration."""

from src.config import Settings


class TestSettings:
    def test_default_settings(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        settings = Settings()
        assert settings.app_name == "txn-anomaly-engine"
        assert settings.app_version == "0.1.0"
        assert settings.redis_url == ""
        assert settings.json_logs is True

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("APP_NAME", "test-app")
        monkeypatch.setenv("DEBUG", "true")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/1")
        monkeypatch.setenv("IP_INTEL_TIMEOUT_SECONDS", "0.5")
        settings = Settings()
        assert settings.app_name == "test-app"
        assert settings.debug is True
        assert settings.redis_url == "redis://cache:6379/1"
        assert settings.ip_intel_timeout_seconds == 0.5

    def test_database_url_default(self):
        settings = Settings()
        assert "postgresql+asyncpg" in settings.database_url

    def test_kafka_settings(self):
        settings = Settings()
        assert settings.anomaly_events_topic == "fraud.anomaly.detected"
        assert settings.kafka_bootstrap_servers
