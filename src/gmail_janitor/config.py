"""Runtime automation settings, persisted as JSON in the database."""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field

BATCH_ERROR_POLICIES = ("halt", "continue")


@dataclass
class PeakHours:
    start: str = "09:00"
    end: str = "17:00"


@dataclass
class ContinuousCleanupConfig:
    enabled: bool = False
    target_emails_per_minute: int = 10
    max_concurrent_operations: int = 3
    pause_during_peak_hours: bool = True
    peak_hours: PeakHours = field(default_factory=PeakHours)


@dataclass
class StorageThresholdConfig:
    enabled: bool = True
    warning_threshold_percent: float = 80
    critical_threshold_percent: float = 95
    emergency_policies: list[str] = field(default_factory=list)


@dataclass
class PerformanceThresholdConfig:
    enabled: bool = True
    query_time_threshold_ms: float = 1000
    cache_hit_rate_threshold: float = 0.7


@dataclass
class EventTriggersConfig:
    storage_threshold: StorageThresholdConfig = field(default_factory=StorageThresholdConfig)
    performance_threshold: PerformanceThresholdConfig = field(
        default_factory=PerformanceThresholdConfig
    )


@dataclass
class AutomationConfig:
    """Settings for the background services and batch execution.

    ``batch_error_policy`` decides what happens when one batch of a job fails:
    ``halt`` stops the job (and the Gmail sub-batch loop) at the first failure,
    ``continue`` records the error and moves on to the next batch.
    """

    continuous_cleanup: ContinuousCleanupConfig = field(default_factory=ContinuousCleanupConfig)
    event_triggers: EventTriggersConfig = field(default_factory=EventTriggersConfig)
    batch_error_policy: str = "halt"
    scheduler_enabled: bool = True

    @property
    def halt_on_error(self) -> bool:
        return self.batch_error_policy == "halt"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> AutomationConfig:
        """Build a config from (possibly partial) plain data, filling defaults."""
        return merge_config(cls(), data)


def _merge_dicts(base: dict, changes: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in changes.items():
        if key not in merged:
            raise ValueError(f"Unknown configuration key: {key}")
        if isinstance(merged[key], dict):
            if not isinstance(value, dict):
                raise ValueError(f"Configuration section {key!r} expects a mapping")
            merged[key] = _merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_config(config: AutomationConfig, changes: dict) -> AutomationConfig:
    """Return a new config with ``changes`` deep-merged over ``config``.

    Raises ValueError on unknown keys or an invalid batch error policy.
    """
    data = _merge_dicts(config.to_dict(), changes)

    cont = data["continuous_cleanup"]
    triggers = data["event_triggers"]
    merged = AutomationConfig(
        continuous_cleanup=ContinuousCleanupConfig(
            enabled=cont["enabled"],
            target_emails_per_minute=cont["target_emails_per_minute"],
            max_concurrent_operations=cont["max_concurrent_operations"],
            pause_during_peak_hours=cont["pause_during_peak_hours"],
            peak_hours=PeakHours(**cont["peak_hours"]),
        ),
        event_triggers=EventTriggersConfig(
            storage_threshold=StorageThresholdConfig(**triggers["storage_threshold"]),
            performance_threshold=PerformanceThresholdConfig(**triggers["performance_threshold"]),
        ),
        batch_error_policy=data["batch_error_policy"],
        scheduler_enabled=data["scheduler_enabled"],
    )

    if merged.batch_error_policy not in BATCH_ERROR_POLICIES:
        raise ValueError(
            f"batch_error_policy must be one of {BATCH_ERROR_POLICIES}, "
            f"got {merged.batch_error_policy!r}"
        )
    if merged.continuous_cleanup.target_emails_per_minute <= 0:
        raise ValueError("target_emails_per_minute must be positive")
    return merged
