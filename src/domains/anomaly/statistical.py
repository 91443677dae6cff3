"""Distributional outlier detectors.

Each detector takes the transaction context and (optionally) the user's
behavioral profile, and returns a DetectorResult with a 0-100 score. Missing
inputs never raise: the detector reports ``detected=False`` with a
``details.reason`` code instead.

The isolation-forest and LOF detectors are deterministic, dependency-free
approximations. They keep the contracts of their namesakes (feature-count
gating, neighbour-count gating, bounded scores), not the textbook algorithms.
"""

import math
import statistics
from datetime import UTC, datetime

from .config import StatisticalConfig
from .models import BehavioralProfile, DetectorResult, TransactionContext


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


class StatisticalAnalyzer:
    """Z-score, IQR, isolation-forest, LOF and seasonal checks."""

    def __init__(self, config: StatisticalConfig | None = None) -> None:
        self._config = config or StatisticalConfig()

    def analyze(
        self, context: TransactionContext, profile: BehavioralProfile | None
    ) -> dict[str, DetectorResult]:
        return {
            "z_score": self.z_score_analysis(context, profile),
            "iqr": self.iqr_analysis(context, profile),
            "isolation_forest": self.isolation_forest_analysis(context),
            "lof": self.local_outlier_factor_analysis(context, profile),
        }

    # --- Z-score ---

    def z_score_analysis(
        self, context: TransactionContext, profile: BehavioralProfile | None
    ) -> DetectorResult:
        """Amount z-score against the profile, plus daily count and volume z's."""
        threshold = self._config.z_score_threshold
        if profile is None or not profile.is_established:
            return DetectorResult(
                confidence=0.3,
                details={"reason": "no_profile", "threshold": threshold},
            )

        if context.amount is None:
            return DetectorResult(details={"reason": "no_amount", "threshold": threshold})

        std_dev = profile.transaction_amount_std_dev
        if std_dev <= 0:
            return DetectorResult(
                confidence=0.3,
                details={
                    "reason": "zero_variance",
                    "z_scores": {"amount": 0.0},
                    "threshold": threshold,
                    "max_z_score": 0.0,
                },
            )

        amount = context.amount
        z_scores = {"amount": (amount - profile.avg_transaction_amount) / std_dev}

        # Poisson approximation: daily count stddev ~ sqrt(mean)
        avg_daily = profile.avg_daily_transaction_count
        if context.daily_transaction_count is not None and avg_daily > 0:
            z_scores["velocity"] = (context.daily_transaction_count - avg_daily) / max(
                math.sqrt(avg_daily), 0.01
            )

        max_daily = profile.max_daily_volume
        if context.daily_transaction_volume is not None and max_daily > 0:
            z_scores["volume"] = (context.daily_transaction_volume - max_daily * 0.5) / max(
                max_daily * 0.25, 0.01
            )

        max_z = max(abs(z) for z in z_scores.values())
        detected = max_z > threshold
        score = min(100.0, max_z / threshold * 50.0)
        confidence = min(0.95, 0.5 + profile.total_transaction_count / 200)

        return DetectorResult(
            detected=detected,
            score=round(score, 2),
            confidence=round(confidence, 4),
            details={
                "z_scores": {k: round(v, 4) for k, v in z_scores.items()},
                "threshold": threshold,
                "max_z_score": round(max_z, 4),
            },
        )

    # --- IQR ---

    def iqr_analysis(
        self, context: TransactionContext, profile: BehavioralProfile | None = None
    ) -> DetectorResult:
        multiplier = self._config.iqr_multiplier
        history = sorted(context.transaction_history)
        n = len(history)

        if n < self._config.min_samples:
            return DetectorResult(
                confidence=0.1,
                details={"reason": "insufficient_history", "count": n},
            )

        if context.amount is None:
            return DetectorResult(details={"reason": "no_amount", "count": n})

        amount = context.amount
        q1 = history[int(n * 0.25)]
        q3 = history[int(n * 0.75)]
        iqr = q3 - q1
        lower_bound = q1 - multiplier * iqr
        upper_bound = q3 + multiplier * iqr

        # Degenerate spread: every amount sits on the same value
        detected = iqr > 0 and (amount < lower_bound or amount > upper_bound)
        score = 0.0
        if detected:
            distance = amount - upper_bound if amount > upper_bound else lower_bound - amount
            score = min(100.0, distance / iqr * 40.0)

        return DetectorResult(
            detected=detected,
            score=round(score, 2),
            confidence=round(min(0.90, 0.4 + n / 200), 4),
            details={
                "q1": round(q1, 2),
                "q3": round(q3, 2),
                "iqr": round(iqr, 2),
                "lower_bound": round(lower_bound, 2),
                "upper_bound": round(upper_bound, 2),
                "amount": amount,
            },
        )

    # --- Isolation forest approximation ---

    def isolation_forest_analysis(self, context: TransactionContext) -> DetectorResult:
        contamination = self._config.isolation_forest_contamination
        features = self.extract_numeric_features(context)

        if not features:
            return DetectorResult(confidence=0.2, details={"reason": "no_features"})

        total_path = 0
        for value in features.values():
            extremity = 1.0 / (1.0 + math.exp(-(abs(value) - 1.0)))
            # Extreme values isolate quickly: short path
            total_path += max(1, 10 - int(extremity * 9))

        avg_path = total_path / len(features)
        anomaly = _clamp(1.0 - avg_path / 10.0)

        return DetectorResult(
            detected=anomaly > 1.0 - contamination,
            score=round(anomaly * 100.0, 2),
            confidence=round(min(0.85, 0.3 + len(features) / 30.0), 4),
            details={
                "avg_path_length": round(avg_path, 4),
                "anomaly_score": round(anomaly, 4),
                "contamination": contamination,
                "feature_count": len(features),
            },
        )

    def extract_numeric_features(self, context: TransactionContext) -> dict[str, float]:
        features: dict[str, float] = {}
        if context.amount is not None and context.amount > 0:
            features["amount_log"] = math.log(context.amount + 1)
        if context.daily_transaction_count is not None:
            features["daily_count"] = float(context.daily_transaction_count)
        if context.daily_transaction_volume is not None:
            features["daily_volume_log"] = math.log(max(context.daily_transaction_volume, 0.0) + 1)
        if context.hourly_transaction_count is not None:
            features["hourly_count"] = float(context.hourly_transaction_count)
        if context.time_since_last_transaction is not None:
            features["time_since_last_log"] = math.log(
                max(context.time_since_last_transaction, 0.0) + 1
            )
        if context.hour_of_day is not None:
            # Cyclical encoding so 23h and 0h sit next to each other
            angle = 2 * math.pi * context.hour_of_day / 24
            features["hour_sin"] = math.sin(angle)
            features["hour_cos"] = math.cos(angle)
        return features

    # --- LOF approximation ---

    def local_outlier_factor_analysis(
        self, context: TransactionContext, profile: BehavioralProfile | None = None
    ) -> DetectorResult:
        k = self._config.lof_neighbors
        history = context.transaction_history

        if len(history) < k:
            return DetectorResult(
                confidence=0.1,
                details={"reason": "insufficient_neighbors", "count": len(history)},
            )

        if context.amount is None:
            return DetectorResult(details={"reason": "no_amount", "count": len(history)})

        amount = context.amount
        distances = sorted(abs(amount - v) for v in history)
        k_distance = distances[k - 1]

        sum_reach = sum(max(d, k_distance) for d in distances[:k])
        local_density = k / sum_reach if sum_reach > 0 else 1.0

        std_dev = statistics.stdev(history) if len(history) > 1 else 0.0
        avg_density = 1.0 / std_dev if std_dev > 0 else 1.0

        lof = local_density / avg_density
        score = min(100.0, abs(1.0 - lof) * 60.0)

        return DetectorResult(
            detected=lof < 0.5 or lof > 2.0,
            score=round(score, 2),
            confidence=round(min(0.80, 0.3 + len(history) / 100.0), 4),
            details={
                "lof_score": round(lof, 4),
                "k_distance": round(k_distance, 2),
                "local_density": round(local_density, 6),
                "avg_neighbor_density": round(avg_density, 6),
            },
        )

    # --- Seasonal ---

    def seasonal_decomposition(
        self,
        context: TransactionContext,
        profile: BehavioralProfile | None,
        now: datetime | None = None,
    ) -> DetectorResult:
        """Score how unusual the hour and weekday are for this user."""
        if profile is None or not profile.is_established:
            return DetectorResult(confidence=0.1, details={"reason": "no_profile"})

        now = now or datetime.now(UTC)
        hour = context.hour_of_day if context.hour_of_day is not None else now.hour
        day = context.day_of_week if context.day_of_week is not None else now.weekday()

        hour_pct = profile.hour_share(hour)
        day_pct = profile.day_share(day)

        time_score = 60.0 if hour_pct < 2.0 else 30.0 if hour_pct < 5.0 else 0.0
        day_score = 40.0 if day_pct < 5.0 else 20.0 if day_pct < 10.0 else 0.0
        combined = min(100.0, time_score + day_score)

        return DetectorResult(
            detected=combined >= 50.0,
            score=round(combined, 2),
            confidence=round(min(0.85, 0.4 + profile.total_transaction_count / 200), 4),
            details={"hour": hour, "hour_pct": hour_pct, "day": day, "day_pct": day_pct},
        )
