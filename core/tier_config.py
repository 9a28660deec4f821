"""Runtime configuration for the tier lifecycle engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from core.env import env_bool, env_duration, env_float, env_int

DEFAULT_WARNING_WINDOW = timedelta(days=7)
DEFAULT_GRACE_NOTICE_WINDOW = timedelta(hours=24)
DEFAULT_GRACE_PERIOD = timedelta(days=7)
DEFAULT_USAGE_RESET_INTERVAL = timedelta(days=30)
DEFAULT_AUDIT_REPAIR_WINDOW = timedelta(days=7)
DEFAULT_AUDIT_REPAIR_DELAY = timedelta(minutes=5)


@dataclass(frozen=True)
class TierEngineConfig:
    """Windows, cadence and sizing knobs shared by the scheduler and quota tracker."""

    warning_window: timedelta = DEFAULT_WARNING_WINDOW
    grace_notice_window: timedelta = DEFAULT_GRACE_NOTICE_WINDOW
    grace_period: timedelta = DEFAULT_GRACE_PERIOD
    usage_reset_interval: timedelta = DEFAULT_USAGE_RESET_INTERVAL
    sweep_batch_size: int = 200
    max_workers: int = 1
    upgrade_prompt_enabled: bool = True
    usage_warning_threshold: float = 0.8
    scheduler_enabled: bool = True
    audit_repair_window: timedelta = DEFAULT_AUDIT_REPAIR_WINDOW
    audit_repair_delay: timedelta = DEFAULT_AUDIT_REPAIR_DELAY

    def __post_init__(self) -> None:
        if self.warning_window <= timedelta(0):
            raise ValueError("warning_window must be positive.")
        if self.grace_notice_window < timedelta(0):
            raise ValueError("grace_notice_window must not be negative.")
        if self.grace_notice_window > self.grace_period:
            raise ValueError("grace_notice_window cannot exceed grace_period.")
        if self.usage_reset_interval <= timedelta(0):
            raise ValueError("usage_reset_interval must be positive.")
        if self.sweep_batch_size < 1 or self.max_workers < 1:
            raise ValueError("sweep_batch_size and max_workers must be >= 1.")
        if not 0 < self.usage_warning_threshold <= 1:
            raise ValueError("usage_warning_threshold must be within (0, 1].")
        if self.audit_repair_delay < timedelta(0) or self.audit_repair_window <= self.audit_repair_delay:
            raise ValueError("audit_repair_window must exceed a non-negative audit_repair_delay.")

    @classmethod
    def from_env(cls) -> "TierEngineConfig":
        return cls(
            warning_window=env_duration("TIER_WARNING_WINDOW_DAYS", 7, minimum=1),
            grace_notice_window=env_duration("TIER_GRACE_NOTICE_HOURS", 24, unit="hours"),
            grace_period=env_duration("TIER_GRACE_PERIOD_DAYS", 7, minimum=1),
            usage_reset_interval=env_duration("TIER_USAGE_RESET_DAYS", 30, minimum=1),
            sweep_batch_size=env_int("TIER_SWEEP_BATCH_SIZE", 200, minimum=1),
            max_workers=env_int("TIER_SCHEDULER_MAX_WORKERS", 1, minimum=1),
            upgrade_prompt_enabled=env_bool("TIER_UPGRADE_PROMPT_ENABLED", True),
            usage_warning_threshold=env_float("TIER_USAGE_WARNING_THRESHOLD", 0.8, minimum=0.01),
            scheduler_enabled=env_bool("ENABLE_TIER_SCHEDULER", True),
            audit_repair_window=env_duration("TIER_AUDIT_REPAIR_WINDOW_DAYS", 7, minimum=1),
            audit_repair_delay=env_duration("TIER_AUDIT_REPAIR_DELAY_MINUTES", 5, unit="minutes"),
        )


__all__ = ["TierEngineConfig"]
