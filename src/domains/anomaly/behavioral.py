"""Behavioral baseline analysis.

Maintains a user's BehavioralProfile (amount statistics, time-of-day and
weekday distributions, trusted devices, location history) and compares new
activity against it: adaptive thresholds, drift and segment classification.
Methods that update the profile mutate it in place; saving is the caller's job.
"""

import math
import statistics
from collections import Counter, defaultdict
from collections.abc import Sequence
from datetime import UTC, date, datetime

import structlog

from .config import BehavioralConfig
from .models import (
    AdaptiveThresholds,
    BehavioralProfile,
    DriftResult,
    ThresholdBreach,
    TransactionContext,
    TransactionRecord,
    UserSegment,
)

logger = structlog.get_logger()


def _distribution(values: list[int], slots: int) -> list[float]:
    """Percentage of values falling in each slot, rounded to 2 decimals."""
    counts = [0] * slots
    for v in values:
        counts[v] += 1
    total = sum(counts)
    if total == 0:
        return [0.0] * slots
    return [round(c / total * 100, 2) for c in counts]


class BehavioralAnalyzer:
    """Builds and evaluates per-user behavioral baselines."""

    def __init__(self, config: BehavioralConfig | None = None) -> None:
        self._config = config or BehavioralConfig()

    # --- Profile maintenance ---

    def update_transaction_stats(
        self,
        profile: BehavioralProfile,
        transactions: Sequence[TransactionRecord],
        now: datetime | None = None,
    ) -> BehavioralProfile:
        """Recompute amount and timing statistics from the user's transactions."""
        if not transactions:
            return profile

        cfg = self._config
        now = now or datetime.now(UTC)
        amounts = [t.amount for t in transactions]

        profile.avg_transaction_amount = statistics.fmean(amounts)
        profile.median_transaction_amount = statistics.median(amounts)
        profile.max_transaction_amount = max(amounts)
        profile.transaction_amount_std_dev = statistics.stdev(amounts) if len(amounts) > 1 else 0.0
        profile.typical_transaction_times = _distribution([t.created_at.hour for t in transactions], 24)
        profile.typical_transaction_days = _distribution(
            [t.created_at.weekday() for t in transactions], 7
        )

        profile.total_transaction_count = len(transactions)
        profile.total_transaction_volume = sum(amounts)

        per_day_count: Counter[date] = Counter()
        per_day_volume: defaultdict[date, float] = defaultdict(float)
        for t in transactions:
            day = t.created_at.date()
            per_day_count[day] += 1
            per_day_volume[day] += t.amount
        profile.max_daily_transactions = max(profile.max_daily_transactions, max(per_day_count.values()))
        profile.max_daily_volume = max(profile.max_daily_volume, max(per_day_volume.values()))

        first_seen = min(t.created_at for t in transactions)
        days_active = max(0, (now - first_seen).days)
        profile.days_since_first_transaction = max(profile.days_since_first_transaction, days_active)

        span_days = max(1, profile.days_since_first_transaction)
        profile.avg_daily_transaction_count = round(len(transactions) / span_days, 4)
        profile.avg_monthly_transaction_count = round(profile.avg_daily_transaction_count * 30, 4)

        was_established = profile.is_established
        profile.is_established = (
            profile.total_transaction_count >= cfg.min_transactions
            and profile.days_since_first_transaction >= cfg.min_days
        )
        if profile.is_established and not was_established:
            profile.profile_established_at = now
            logger.info(
                "behavioral_profile_established",
                user_id=profile.user_id,
                transactions=profile.total_transaction_count,
            )

        profile.updated_at = now
        return profile

    def add_trusted_device(self, profile: BehavioralProfile, fingerprint: str) -> bool:
        if fingerprint in profile.trusted_devices:
            return False
        profile.trusted_devices.append(fingerprint)
        return True

    def update_location_history(
        self,
        profile: BehavioralProfile,
        country: str,
        city: str | None = None,
        ip: str | None = None,
        lat: float | None = None,
        lon: float | None = None,
        now: datetime | None = None,
    ) -> BehavioralProfile:
        """Append a sighting, keep the newest entries and refresh the top locations."""
        cfg = self._config
        entry = {
            "country": country,
            "city": city,
            "ip": ip,
            "timestamp": (now or datetime.now(UTC)).isoformat(),
        }
        if lat is not None and lon is not None:
            entry["lat"] = lat
            entry["lon"] = lon

        history = [*profile.location_history, entry][-cfg.location_history_size :]
        profile.location_history = history

        frequency = Counter((loc.get("country"), loc.get("city")) for loc in history)
        profile.common_locations = [
            {"country": c, "city": ci, "frequency": n}
            for (c, ci), n in frequency.most_common(cfg.common_locations_size)
        ]
        return profile

    # --- Detection ---

    def compute_adaptive_thresholds(self, profile: BehavioralProfile) -> AdaptiveThresholds:
        s = self._config.adaptive_sensitivity
        mean = profile.avg_transaction_amount
        std_dev = profile.transaction_amount_std_dev
        avg_daily = profile.avg_daily_transaction_count

        thresholds = AdaptiveThresholds(
            amount_upper=mean + s * std_dev,
            amount_lower=max(0.0, mean - s * std_dev),
            daily_count_max=math.floor(avg_daily) + math.ceil(s * math.sqrt(max(1.0, avg_daily))),
            daily_volume_max=profile.max_daily_volume * (1 + s * 0.5),
        )
        profile.adaptive_thresholds = thresholds
        return thresholds

    def detect_threshold_breaches(
        self, context: TransactionContext, thresholds: AdaptiveThresholds
    ) -> list[ThresholdBreach]:
        breaches = []
        amount = context.amount or 0.0

        if amount > thresholds.amount_upper:
            breaches.append(
                ThresholdBreach(metric="amount_high", value=amount, threshold=thresholds.amount_upper)
            )
        if 0 < amount < thresholds.amount_lower:
            breaches.append(
                ThresholdBreach(metric="amount_low", value=amount, threshold=thresholds.amount_lower)
            )

        daily_count = context.daily_transaction_count or 0
        if daily_count > thresholds.daily_count_max:
            breaches.append(
                ThresholdBreach(
                    metric="daily_count",
                    value=float(daily_count),
                    threshold=float(thresholds.daily_count_max),
                )
            )

        daily_volume = context.daily_transaction_volume or 0.0
        if daily_volume > thresholds.daily_volume_max:
            breaches.append(
                ThresholdBreach(
                    metric="daily_volume", value=daily_volume, threshold=thresholds.daily_volume_max
                )
            )

        return breaches

    def detect_drift(
        self,
        profile: BehavioralProfile,
        recent_amounts: Sequence[float],
        now: datetime | None = None,
    ) -> DriftResult:
        """Compare recent amounts and frequency to the baseline.

        The drift metrics and check timestamp are written to the profile on
        every call, including when there is nothing to compare.
        """
        cfg = self._config
        now = now or datetime.now(UTC)
        baseline_mean = profile.avg_transaction_amount
        baseline_std = profile.transaction_amount_std_dev

        if baseline_mean <= 0 or not recent_amounts:
            profile.drift_score = 0.0
            profile.drift_metrics = {
                "baseline_mean": baseline_mean,
                "recent_count": float(len(recent_amounts)),
            }
            profile.last_drift_check_at = now
            return DriftResult(details={"reason": "no_baseline" if baseline_mean <= 0 else "no_recent"})

        recent_mean = statistics.fmean(recent_amounts)
        mean_shift = abs(recent_mean - baseline_mean)
        if baseline_std > 0:
            normalized_shift = mean_shift / baseline_std
        else:
            normalized_shift = 1.0 if mean_shift > 0 else 0.0

        expected_count = profile.avg_daily_transaction_count * cfg.drift_window_days
        count_ratio = (
            abs(len(recent_amounts) - expected_count) / expected_count if expected_count > 0 else 0.0
        )

        drift_score = min(1.0, normalized_shift * 0.6 + count_ratio * 0.4)
        metrics = {
            "baseline_mean": baseline_mean,
            "recent_mean": round(recent_mean, 2),
            "normalized_shift": round(normalized_shift, 4),
            "count_ratio": round(count_ratio, 4),
        }

        # Stored on the profile as a 0-100 score
        profile.drift_score = round(drift_score * 100, 2)
        profile.drift_metrics = metrics
        profile.last_drift_check_at = now

        return DriftResult(
            drifted=drift_score > cfg.drift_threshold,
            drift_score=round(drift_score, 4),
            details={**metrics, "mean_shift": round(mean_shift, 2)},
        )

    def classify_segment(self, profile: BehavioralProfile) -> UserSegment:
        cfg = self._config
        days = profile.days_since_first_transaction
        monthly = profile.avg_monthly_transaction_count

        if profile.is_established and days > cfg.dormant_days and monthly < 1:
            segment = UserSegment.DORMANT_REACTIVATED
        elif not profile.is_established or days < cfg.new_account_days:
            segment = UserSegment.NEW_ACCOUNT
        elif (
            profile.avg_transaction_amount > cfg.high_value_avg_amount
            and monthly > cfg.high_value_monthly_count
        ):
            segment = UserSegment.HIGH_VALUE_TRADER
        elif monthly < cfg.occasional_monthly_count:
            segment = UserSegment.OCCASIONAL_USER
        else:
            segment = UserSegment.RETAIL_CONSUMER

        profile.user_segment = segment
        if segment.value not in profile.segment_tags:
            profile.segment_tags.append(segment.value)
        return segment
