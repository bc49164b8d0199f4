"""Mailbox health metrics used to fire event-driven cleanups."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace

from .constants import DEFAULT_STORAGE_QUOTA_BYTES
from .database import CleanupDatabase
from .models import SystemHealth, utcnow

logger = logging.getLogger(__name__)


@dataclass
class HealthThresholds:
    storage_warning_percent: float = 80
    storage_critical_percent: float = 95
    query_time_warning_ms: float = 500
    query_time_critical_ms: float = 1000
    cache_hit_rate_warning: float = 0.8
    cache_hit_rate_critical: float = 0.6


class SystemHealthMonitor:
    """Derives storage, latency and cache metrics from the local store."""

    def __init__(
        self,
        database: CleanupDatabase,
        storage_quota_bytes: int = DEFAULT_STORAGE_QUOTA_BYTES,
        thresholds: HealthThresholds | None = None,
    ) -> None:
        self.database = database
        self.storage_quota_bytes = storage_quota_bytes
        self.thresholds = thresholds or HealthThresholds()

    def record_query_time(self, elapsed_ms: float) -> None:
        self.database.record_query_time(elapsed_ms)

    def record_cache_hit(self, hit: bool) -> None:
        self.database.record_cache_hit(hit)

    def get_cache_hit_rate(self) -> float:
        return self.database.get_cache_hit_rate()

    def get_thresholds(self) -> HealthThresholds:
        return replace(self.thresholds)

    def update_thresholds(self, **changes: float) -> HealthThresholds:
        self.thresholds = replace(self.thresholds, **changes)
        logger.info("Health thresholds updated: %s", asdict(self.thresholds))
        return self.get_thresholds()

    def get_current_health(self) -> SystemHealth:
        stats = self.database.get_storage_stats()
        used = stats["active_size"]
        storage_percent = used / self.storage_quota_bytes * 100 if self.storage_quota_bytes else 0.0
        query_ms = self.database.get_average_query_time_ms()
        hit_rate = self.get_cache_hit_rate()

        t = self.thresholds
        warnings: list[str] = []
        errors: list[str] = []

        if storage_percent >= t.storage_critical_percent:
            errors.append(f"Storage usage critical: {storage_percent:.1f}%")
        elif storage_percent >= t.storage_warning_percent:
            warnings.append(f"Storage usage high: {storage_percent:.1f}%")

        if query_ms >= t.query_time_critical_ms:
            errors.append(f"Query time critical: {query_ms:.0f}ms")
        elif query_ms >= t.query_time_warning_ms:
            warnings.append(f"Query time slow: {query_ms:.0f}ms")

        if hit_rate < t.cache_hit_rate_critical:
            errors.append(f"Cache hit rate critical: {hit_rate:.0%}")
        elif hit_rate < t.cache_hit_rate_warning:
            warnings.append(f"Cache hit rate low: {hit_rate:.0%}")

        status = "critical" if errors else "warning" if warnings else "healthy"
        health = SystemHealth(
            storage_usage_percent=round(storage_percent, 2),
            average_query_time_ms=round(query_ms, 2),
            cache_hit_rate=round(hit_rate, 3),
            status=status,
            storage_used_bytes=used,
            storage_total_bytes=self.storage_quota_bytes,
            warnings=warnings,
            errors=errors,
            last_check=utcnow(),
        )
        logger.debug("Health check: %s (storage %.1f%%)", status, storage_percent)
        return health
