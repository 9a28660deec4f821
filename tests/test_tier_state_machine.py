from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from core.plan_constants import LifecycleState
from core.tier_config import TierEngineConfig
from services.tier_state_machine import classify, days_until_expiration, grace_period_end, seconds_until

T = datetime(2025, 8, 8, 14, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "expires_at",
    [None, T - timedelta(days=365), T - timedelta(days=8), T, T + timedelta(days=2), T + timedelta(days=90)],
)
def test_free_plan_is_always_active(expires_at) -> None:
    result = classify("free", expires_at, T)
    assert result.state is LifecycleState.ACTIVE
    assert not result.requires_action


def test_premium_without_expiry_is_active() -> None:
    assert classify("premium", None, T).state is LifecycleState.ACTIVE


@pytest.mark.parametrize(
    ("delta", "expected"),
    [
        (timedelta(days=7, seconds=1), LifecycleState.ACTIVE),
        (timedelta(days=7), LifecycleState.EXPIRING_SOON),
        (timedelta(seconds=1), LifecycleState.EXPIRING_SOON),
        (timedelta(0), LifecycleState.GRACE_PERIOD),
        (-timedelta(hours=24), LifecycleState.GRACE_PERIOD),
        (-timedelta(hours=24, seconds=1), LifecycleState.GRACE_CONTINUING),
        (-timedelta(days=7), LifecycleState.GRACE_CONTINUING),
        (-timedelta(days=7, seconds=1), LifecycleState.DOWNGRADED),
    ],
)
def test_premium_window_boundaries(delta: timedelta, expected: LifecycleState) -> None:
    assert classify("premium", T + delta, T).state is expected


def test_expiring_soon_reports_rounded_up_days() -> None:
    result = classify("premium", T + timedelta(days=2), T)
    assert result.state is LifecycleState.EXPIRING_SOON
    assert result.days_left == 2

    partial = classify("premium", T + timedelta(days=1, hours=1), T)
    assert partial.days_left == 2

    last_second = classify("premium", T + timedelta(seconds=1), T)
    assert last_second.days_left == 1


def test_grace_period_end_is_seven_days_after_expiry() -> None:
    expires_at = T - timedelta(hours=6)
    result = classify("premium", expires_at, T)
    assert result.state is LifecycleState.GRACE_PERIOD
    assert result.grace_period_end == expires_at + timedelta(days=7)
    assert result.in_grace_period
    assert grace_period_end(expires_at) == expires_at + timedelta(days=7)


def test_sub_second_precision_is_ignored() -> None:
    expires_at = T + timedelta(days=7)
    now = T.replace(microsecond=999_999)
    assert seconds_until(expires_at, now) == 7 * 86400
    assert classify("premium", expires_at.replace(microsecond=500_000), now).state is LifecycleState.EXPIRING_SOON


def test_naive_timestamps_are_treated_as_utc() -> None:
    naive = (T - timedelta(days=10)).replace(tzinfo=None)
    assert classify("premium", naive, T).state is LifecycleState.DOWNGRADED


def test_custom_windows_are_honoured() -> None:
    config = TierEngineConfig(
        warning_window=timedelta(days=3),
        grace_notice_window=timedelta(hours=12),
        grace_period=timedelta(days=2),
    )
    assert classify("premium", T + timedelta(days=4), T, config).state is LifecycleState.ACTIVE
    assert classify("premium", T - timedelta(hours=13), T, config).state is LifecycleState.GRACE_CONTINUING
    assert classify("premium", T - timedelta(days=2, seconds=1), T, config).state is LifecycleState.DOWNGRADED


def test_days_until_expiration() -> None:
    assert days_until_expiration(None, T) is None
    assert days_until_expiration(T + timedelta(hours=1), T) == 1
    assert days_until_expiration(T - timedelta(days=2), T) == -2


def test_config_rejects_inconsistent_windows() -> None:
    with pytest.raises(ValueError):
        TierEngineConfig(grace_notice_window=timedelta(days=8))
    with pytest.raises(ValueError):
        TierEngineConfig(sweep_batch_size=0)
