"""IP reputation scoring from resolved IP intelligence and blocked-transaction history."""

from collections.abc import Mapping
from typing import Any, Protocol

import httpx
import structlog
from redis.asyncio import Redis

from .config import IpReputationConfig
from .counters import CounterStore
from .models import IpIntelligence, IpReputation

logger = structlog.get_logger()


class IpIntelligenceProvider(Protocol):
    async def get_ip_data(self, ip: str) -> IpIntelligence | None:
        """Resolve intelligence for an IP. None when the provider knows nothing about it."""
        ...


# --- Providers ---


class HttpIpIntelligenceProvider:
    """Queries an HTTP intelligence service at ``{base_url}/{ip}``.

    Expects a JSON body with ``country``, ``is_vpn``, ``is_proxy``, ``is_tor``
    and ``risk_score``. A 404 means unknown; other HTTP errors and timeouts
    propagate to the caller.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 1.5,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def get_ip_data(self, ip: str) -> IpIntelligence | None:
        resp = await self._client.get(f"/{ip}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return IpIntelligence.model_validate(resp.json())

    async def close(self) -> None:
        await self._client.aclose()


class StaticIpIntelligenceProvider:
    """Serves intelligence from a fixed mapping. Used in tests and offline setups."""

    def __init__(self, data: Mapping[str, IpIntelligence | Mapping[str, Any]] | None = None) -> None:
        self._data = {
            ip: v if isinstance(v, IpIntelligence) else IpIntelligence.model_validate(v)
            for ip, v in (data or {}).items()
        }

    async def get_ip_data(self, ip: str) -> IpIntelligence | None:
        return self._data.get(ip)


class CachedIpIntelligenceProvider:
    """Read-through Redis cache in front of another provider. Misses are not cached."""

    def __init__(self, inner: IpIntelligenceProvider, redis: Redis, ttl_seconds: int = 86400) -> None:
        self._inner = inner
        self._redis = redis
        self._ttl = ttl_seconds

    async def get_ip_data(self, ip: str) -> IpIntelligence | None:
        key = f"ip_intel:{ip}"
        cached = await self._redis.get(key)
        if cached is not None:
            return IpIntelligence.model_validate_json(cached)

        data = await self._inner.get_ip_data(ip)
        if data is not None:
            await self._redis.set(key, data.model_dump_json(), ex=self._ttl)
        return data


# --- Scoring ---


class IpReputationService:
    """Weighted 0-100 IP risk score with explanatory flags."""

    def __init__(
        self,
        provider: IpIntelligenceProvider,
        counters: CounterStore,
        config: IpReputationConfig | None = None,
    ) -> None:
        self._provider = provider
        self._counters = counters
        self._config = config or IpReputationConfig()

    async def assess_ip_reputation(self, ip: str) -> IpReputation:
        cfg = self._config
        intel = await self._provider.get_ip_data(ip)

        if intel is None:
            # Unknown IPs fail open
            return IpReputation(details={"reason": "ip_data_unavailable", "ip": ip})

        flags: list[str] = []
        risk = 0.0

        if intel.is_vpn:
            flags.append("vpn_detected")
            risk += cfg.vpn_weight
        if intel.is_proxy:
            flags.append("proxy_detected")
            risk += cfg.proxy_weight
        if intel.is_tor:
            flags.append("tor_detected")
            risk += cfg.tor_weight

        if intel.risk_score > cfg.provider_risk_floor:
            flags.append("high_provider_risk")
            risk += intel.risk_score * cfg.provider_risk_factor

        blocked = await self._counters.count_blocked_ip(ip)
        if blocked >= cfg.blocked_association_min:
            flags.append("associated_with_blocked_transactions")
            risk += min(blocked * cfg.blocked_association_weight, cfg.blocked_association_cap)

        risk = min(round(risk, 2), 100.0)

        return IpReputation(
            risk_score=risk,
            flags=flags,
            details={
                "ip": ip,
                "country": intel.country,
                "is_vpn": intel.is_vpn,
                "is_proxy": intel.is_proxy,
                "is_tor": intel.is_tor,
                "provider_risk_score": intel.risk_score,
                "blocked_associations": blocked,
                "exceeds_threshold": risk >= cfg.ip_reputation_threshold,
            },
        )

    async def record_blocked_transaction(self, ip: str) -> int:
        """Count a blocked transaction against the IP for the lookback period."""
        count = await self._counters.increment_blocked_ip(ip, self._config.blocked_lookback_days * 86400)
        logger.info("blocked_transaction_recorded", ip=ip, blocked_count=count)
        return count
