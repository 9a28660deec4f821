"""Pure classification of an account's subscription lifecycle state."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from core.plan_constants import LifecycleState, PlanTier, normalize_plan_tier
from core.tier_config import TierEngineConfig
from core.timeutils import ensure_utc

_DAY_SECONDS = 24 * 60 * 60
_DEFAULT_CONFIG = TierEngineConfig()


@dataclass(frozen=True)
class Classification:
    """Lifecycle state plus the data its implied action needs."""

    state: LifecycleState
    seconds_remaining: Optional[int] = None
    days_left: Optional[int] = None
    grace_period_end: Optional[datetime] = None

    @property
    def requires_action(self) -> bool:
        return self.state in {
            LifecycleState.EXPIRING_SOON,
            LifecycleState.GRACE_PERIOD,
            LifecycleState.DOWNGRADED,
        }

    @property
    def in_grace_period(self) -> bool:
        return self.state in {LifecycleState.GRACE_PERIOD, LifecycleState.GRACE_CONTINUING}


def seconds_until(expires_at: datetime, now: datetime) -> int:
    """Whole seconds from ``now`` to ``expires_at``; sub-second parts are dropped from both."""
    expires = ensure_utc(expires_at).replace(microsecond=0)  # type: ignore[union-attr]
    reference = ensure_utc(now).replace(microsecond=0)  # type: ignore[union-attr]
    return int((expires - reference).total_seconds())


def grace_period_end(expires_at: datetime, config: TierEngineConfig = _DEFAULT_CONFIG) -> datetime:
    return ensure_utc(expires_at) + config.grace_period  # type: ignore[operator]


def classify(
    plan: str | PlanTier,
    expires_at: Optional[datetime],
    now: datetime,
    config: TierEngineConfig = _DEFAULT_CONFIG,
) -> Classification:
    """Map (plan, expiry, reference time) to exactly one lifecycle state.

    Boundaries, with ``delta = expires_at - now``:

    * ``delta > warning_window``                      -> ACTIVE
    * ``0 < delta <= warning_window``                 -> EXPIRING_SOON
    * ``-grace_notice_window <= delta <= 0``          -> GRACE_PERIOD
    * ``-grace_period <= delta < -grace_notice_window`` -> GRACE_CONTINUING
    * ``delta < -grace_period``                       -> DOWNGRADED

    Free plans and premium plans without an expiry are always ACTIVE.
    """
    if normalize_plan_tier(plan) is not PlanTier.PREMIUM or expires_at is None:
        return Classification(state=LifecycleState.ACTIVE)

    delta = seconds_until(expires_at, now)
    warning = int(config.warning_window.total_seconds())
    notice = int(config.grace_notice_window.total_seconds())
    grace = int(config.grace_period.total_seconds())
    grace_end = grace_period_end(expires_at, config)

    if delta > warning:
        return Classification(state=LifecycleState.ACTIVE, seconds_remaining=delta)
    if delta > 0:
        return Classification(
            state=LifecycleState.EXPIRING_SOON,
            seconds_remaining=delta,
            days_left=math.ceil(delta / _DAY_SECONDS),
        )
    if delta >= -notice:
        return Classification(
            state=LifecycleState.GRACE_PERIOD,
            seconds_remaining=delta,
            grace_period_end=grace_end,
        )
    if delta >= -grace:
        return Classification(
            state=LifecycleState.GRACE_CONTINUING,
            seconds_remaining=delta,
            grace_period_end=grace_end,
        )
    return Classification(state=LifecycleState.DOWNGRADED, seconds_remaining=delta, grace_period_end=grace_end)


def days_until_expiration(expires_at: Optional[datetime], now: datetime) -> Optional[int]:
    if expires_at is None:
        return None
    return math.ceil(seconds_until(expires_at, now) / _DAY_SECONDS)


__all__ = [
    "Classification",
    "classify",
    "days_until_expiration",
    "grace_period_end",
    "seconds_until",
]
