"""Real-time transaction anomaly detection."""

from .config import AnomalyConfig, default_config
from .models import (
    AnomalyCandidate,
    AnomalyDetection,
    AnomalyType,
    DetectionMethod,
    DetectionResult,
    Severity,
    TransactionContext,
    calculate_severity,
)
from .orchestrator import AnomalyDetectionOrchestrator

__all__ = [
    "AnomalyCandidate",
    "AnomalyConfig",
    "AnomalyDetection",
    "AnomalyDetectionOrchestrator",
    "AnomalyType",
    "DetectionMethod",
    "DetectionResult",
    "Severity",
    "TransactionContext",
    "calculate_severity",
    "default_config",
]
