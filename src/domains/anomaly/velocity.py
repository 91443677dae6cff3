"""Velocity rules: multi-window sliding counters, burst ratio, cross-account correlation."""

import structlog

from .config import VelocityConfig
from .counters import CounterStore
from .models import BurstResult, CrossAccountResult, TransactionContext, WindowEvaluation

logger = structlog.get_logger()

DEVICE = "device"
IP = "ip"


class VelocityRuleEngine:
    """Evaluates transaction rates against configured windows and baselines."""

    def __init__(self, counters: CounterStore, config: VelocityConfig | None = None) -> None:
        self._counters = counters
        self._config = config or VelocityConfig()

    async def record_transaction(
        self, user_id: int, amount: float, transaction_id: str | None = None
    ) -> bool:
        """Count a transaction in every window. Retries of the same id are ignored."""
        recorded = await self._counters.record_transaction(
            user_id, max(amount, 0.0), transaction_id, self._config.sliding_windows
        )
        if recorded:
            logger.debug(
                "velocity_recorded", user_id=user_id, transaction_id=transaction_id, amount=amount
            )
        return recorded

    async def evaluate_sliding_windows(
        self, context: TransactionContext, user_id: int | None = None
    ) -> dict[str, WindowEvaluation]:
        user_id = user_id if user_id is not None else context.user_id
        results: dict[str, WindowEvaluation] = {}

        for window in self._config.sliding_windows:
            count, volume = 0, 0.0
            if user_id is not None:
                count, volume = await self._counters.read_window(user_id, window)

            results[window.label] = WindowEvaluation(
                exceeded=count > window.max_count or volume > window.max_volume,
                count=count,
                volume=round(volume, 2),
                max_count=window.max_count,
                max_volume=window.max_volume,
            )

        return results

    def detect_burst(self, context: TransactionContext) -> BurstResult:
        """Compare the current hourly rate to the user's average hourly rate."""
        threshold = self._config.burst_ratio_threshold
        current_rate = float(context.hourly_transaction_count or 0)
        baseline_rate = (context.avg_daily_transaction_count or 0.0) / 24.0

        if baseline_rate <= 0:
            return BurstResult(details={"reason": "no_baseline"})

        ratio = current_rate / baseline_rate
        return BurstResult(
            burst_detected=ratio > threshold,
            burst_ratio=round(ratio, 4),
            details={
                "current_rate": current_rate,
                "baseline_rate": round(baseline_rate, 4),
                "threshold": threshold,
            },
        )

    async def record_identifiers(
        self, context: TransactionContext, user_id: int | None = None
    ) -> None:
        """Register the device fingerprint and IP as seen for this user."""
        user_id = user_id if user_id is not None else context.user_id
        if user_id is None:
            return

        ttl = self._config.cross_account.time_window_minutes * 60
        if fingerprint := context.device_fingerprint:
            await self._counters.record_identifier(DEVICE, fingerprint, user_id, ttl)
        if ip := context.effective_ip:
            await self._counters.record_identifier(IP, ip, user_id, ttl)

    async def detect_cross_account_activity(
        self, context: TransactionContext, user_id: int | None = None
    ) -> CrossAccountResult:
        """Count other users sharing this device or IP inside the time window."""
        cfg = self._config.cross_account
        if not cfg.enabled:
            return CrossAccountResult(details={"reason": "disabled"})

        user_id = user_id if user_id is not None else context.user_id
        window_seconds = cfg.time_window_minutes * 60

        shared_device_users = 0
        shared_ip_users = 0
        if fingerprint := context.device_fingerprint:
            shared_device_users = await self._counters.count_distinct_users(
                DEVICE, fingerprint, user_id, window_seconds
            )
        if ip := context.effective_ip:
            shared_ip_users = await self._counters.count_distinct_users(
                IP, ip, user_id, window_seconds
            )

        detected = (
            shared_device_users >= cfg.shared_device_threshold
            or shared_ip_users >= cfg.shared_ip_threshold
        )
        if detected:
            logger.info(
                "cross_account_activity_detected",
                user_id=user_id,
                shared_device_users=shared_device_users,
                shared_ip_users=shared_ip_users,
            )

        return CrossAccountResult(
            detected=detected,
            details={
                "shared_device_users": shared_device_users,
                "shared_ip_users": shared_ip_users,
                "device_threshold": cfg.shared_device_threshold,
                "ip_threshold": cfg.shared_ip_threshold,
            },
        )
