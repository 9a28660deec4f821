"""Shared plan tier constants used across the tier engine."""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence


class PlanTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class ChangeReason(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    EXPIRATION = "expiration"
    MANUAL = "manual"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class LifecycleState(str, Enum):
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    GRACE_PERIOD = "grace_period"
    GRACE_CONTINUING = "grace_continuing"
    DOWNGRADED = "downgraded"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class AuditAction(str, Enum):
    EXPIRING_WARNING = "tier_expiring_warning"
    GRACE_PERIOD = "tier_grace_period"
    DOWNGRADED = "tier_downgraded"
    PLAN_CHANGED = "tier_plan_changed"
    QUOTA_EXCEEDED = "tier_quota_exceeded"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


SUPPORTED_PLAN_TIERS: Sequence[PlanTier] = tuple(PlanTier)
AUDIT_RESOURCE = "tier_scheduler"


def normalize_plan_tier(value: Optional[str | PlanTier]) -> PlanTier:
    if not value:
        return PlanTier.FREE
    lowered = str(value).strip().lower()
    if lowered in {tier.value for tier in SUPPORTED_PLAN_TIERS}:
        return PlanTier(lowered)
    return PlanTier.FREE


__all__ = [
    "AUDIT_RESOURCE",
    "AuditAction",
    "ChangeReason",
    "LifecycleState",
    "PlanTier",
    "SUPPORTED_PLAN_TIERS",
    "normalize_plan_tier",
]
