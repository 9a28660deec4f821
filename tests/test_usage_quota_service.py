from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm.exc import StaleDataError

from core.plan_constants import AuditAction, PlanTier
from core.tier_config import TierEngineConfig
from services.tier_catalog import TierCatalog
from services.tier_errors import (
    AccountNotFoundError,
    AuditWriteError,
    FeatureNotDefined,
    FeatureUnavailable,
    QuotaExceeded,
    UsageConflictError,
)
from services.usage_quota_service import (
    FEATURE_NOT_AVAILABLE,
    FEATURE_NOT_DEFINED,
    USAGE_LIMIT_EXCEEDED,
    UsageQuotaTracker,
)

T = datetime(2025, 8, 8, 14, 15, tzinfo=timezone.utc)


def test_first_increment_creates_row_with_limit_snapshot(tier_engine, make_account) -> None:
    account_id = make_account(plan="free")

    result = tier_engine.quota.increment(account_id, "max_categories", now=T)

    assert result.current_usage == 1
    assert result.limit == 20
    assert result.remaining == 19
    assert result.last_reset_at == T
    assert tier_engine.quota.get_usage(account_id)["max_categories"].current_usage == 1


def test_increment_past_limit_raises_and_prompts_upgrade(tier_engine, make_account, dispatcher) -> None:
    account_id = make_account(plan="free")
    tier_engine.quota.increment(account_id, "max_categories", delta=20, now=T)

    with pytest.raises(QuotaExceeded) as exc:
        tier_engine.quota.increment(account_id, "max_categories", now=T)

    detail = exc.value.to_detail()
    assert detail["code"] == "tier.quota_exceeded"
    assert detail["feature"] == "max_categories"
    assert detail["planTier"] == "free"
    assert detail["currentUsage"] == 20
    assert detail["limit"] == 20
    assert dispatcher.calls == [("upgrade_prompt", account_id, "max_categories")]
    assert tier_engine.quota.get_usage(account_id)["max_categories"].current_usage == 20


def test_upgrade_prompt_can_be_disabled(session_factory, make_account, dispatcher) -> None:
    config = TierEngineConfig(upgrade_prompt_enabled=False)
    tracker = UsageQuotaTracker(
        session_factory=session_factory,
        catalog=TierCatalog(session_factory=session_factory),
        config=config,
        dispatcher=dispatcher,
    )
    account_id = make_account(plan="free")
    tracker.increment(account_id, "max_categories", delta=20, now=T)

    with pytest.raises(QuotaExceeded):
        tracker.increment(account_id, "max_categories", now=T)
    assert dispatcher.calls == []


def test_premium_unlimited_feature_never_exceeds(tier_engine, make_account, dispatcher) -> None:
    account_id = make_account(plan="premium", expires_at=T + timedelta(days=30))

    result = tier_engine.quota.increment(account_id, "max_products", delta=10_000, now=T)

    assert result.limit is None
    assert result.remaining is None
    assert dispatcher.calls == []


def test_disabled_and_unknown_features_are_rejected(tier_engine, make_account) -> None:
    account_id = make_account(plan="free")

    with pytest.raises(FeatureUnavailable) as unavailable:
        tier_engine.quota.increment(account_id, "analytics_access", now=T)
    assert unavailable.value.to_detail()["code"] == "tier.feature_unavailable"

    with pytest.raises(FeatureNotDefined):
        tier_engine.quota.increment(account_id, "teleportation", now=T)


def test_unknown_account_is_rejected(tier_engine) -> None:
    with pytest.raises(AccountNotFoundError):
        tier_engine.quota.increment(uuid.uuid4(), "max_products", now=T)


def test_counter_resets_once_interval_elapsed(tier_engine, make_account) -> None:
    account_id = make_account(plan="free")
    tier_engine.quota.increment(account_id, "max_products", delta=40, now=T - timedelta(days=31))

    result = tier_engine.quota.increment(account_id, "max_products", now=T)

    assert result.current_usage == 1
    assert result.last_reset_at == T


def test_reset_if_due(tier_engine, make_account) -> None:
    account_id = make_account(plan="free")
    tier_engine.quota.increment(account_id, "max_products", delta=5, now=T)

    assert tier_engine.quota.reset_if_due(account_id, "max_products", now=T + timedelta(days=29)) is False
    assert tier_engine.quota.reset_if_due(account_id, "max_products", now=T + timedelta(days=30)) is True
    assert tier_engine.quota.get_usage(account_id)["max_products"].current_usage == 0
    assert tier_engine.quota.reset_if_due(account_id, "max_categories", now=T) is False


def test_decrement_never_goes_negative(tier_engine, make_account) -> None:
    account_id = make_account(plan="free")
    tier_engine.quota.increment(account_id, "max_products", delta=2, now=T)

    result = tier_engine.quota.decrement(account_id, "max_products", delta=5, now=T)

    assert result.current_usage == 0
    assert tier_engine.quota.decrement(account_id, "max_categories", now=T).current_usage == 0


def test_non_positive_delta_is_rejected(tier_engine, make_account) -> None:
    account_id = make_account(plan="free")
    with pytest.raises(ValueError):
        tier_engine.quota.increment(account_id, "max_products", delta=0, now=T)


def test_usage_threshold_warning(tier_engine, make_account) -> None:
    account_id = make_account(plan="free")
    tier_engine.quota.increment(account_id, "max_categories", delta=15, now=T)

    below = tier_engine.quota.check_usage_threshold(account_id, "max_categories")
    assert below.threshold_exceeded is False
    assert below.warning_message is None

    tier_engine.quota.increment(account_id, "max_categories", now=T)
    reached = tier_engine.quota.check_usage_threshold(account_id, "max_categories")
    assert reached.threshold_exceeded is True
    assert reached.percentage == pytest.approx(0.8)
    assert reached.warning_message == "You are approaching your max_categories limit (80% used)"

    untouched = tier_engine.quota.check_usage_threshold(account_id, "max_products")
    assert untouched.threshold_exceeded is False
    assert untouched.current_usage == 0


def test_reset_for_tier_change_resnapshots_limits(tier_engine, make_account) -> None:
    account_id = make_account(plan="premium", expires_at=T + timedelta(days=10))
    tier_engine.quota.increment(account_id, "max_products", delta=120, now=T)

    session = tier_engine.session_factory()
    try:
        reset = tier_engine.quota.reset_for_tier_change(session, account_id, PlanTier.FREE, T)
        session.commit()
    finally:
        session.close()

    usage = tier_engine.quota.get_usage(account_id)["max_products"]
    assert reset == 1
    assert usage.current_usage == 0
    assert usage.limit == 50


class _StaleSession:
    def __init__(self) -> None:
        self.rolled_back = False

    def commit(self) -> None:
        raise StaleDataError("UPDATE statement on table 'user_tier_features' expected to update 1 row(s); 0 were matched.")

    def rollback(self) -> None:
        self.rolled_back = True


def test_stale_version_surfaces_as_conflict() -> None:
    session = _StaleSession()
    with pytest.raises(UsageConflictError):
        UsageQuotaTracker._commit(session, uuid.uuid4(), "max_products")  # type: ignore[arg-type]
    assert session.rolled_back


def test_quota_rejection_is_audited(tier_engine, make_account) -> None:
    account_id = make_account(plan="free")
    tier_engine.quota.increment(account_id, "max_categories", delta=20, now=T)

    with pytest.raises(QuotaExceeded):
        tier_engine.quota.increment(account_id, "max_categories", now=T)

    [record] = tier_engine.audit.list_for_account(account_id)
    assert record.action == AuditAction.QUOTA_EXCEEDED.value
    assert record.success is True
    assert record.details["feature"] == "max_categories"
    assert (record.details["planTier"], record.details["limit"]) == ("free", 20)


def test_quota_rejection_survives_audit_failure(tier_engine, make_account, monkeypatch: pytest.MonkeyPatch) -> None:
    account_id = make_account(plan="free")
    tier_engine.quota.increment(account_id, "max_categories", delta=20, now=T)

    def failing_log(entry):
        raise AuditWriteError("audit database unavailable")

    monkeypatch.setattr(tier_engine.audit, "log", failing_log)

    with pytest.raises(QuotaExceeded):
        tier_engine.quota.increment(account_id, "max_categories", now=T)


def test_check_access_does_not_consume_usage(tier_engine, make_account) -> None:
    account_id = make_account(plan="free")

    fresh = tier_engine.quota.check_access(account_id, "max_categories", now=T)
    assert (fresh.access_granted, fresh.feature_available, fresh.usage_within_limits) == (True, True, True)
    assert (fresh.current_usage, fresh.limit, fresh.reason) == (0, 20, None)
    assert tier_engine.quota.get_usage(account_id) == {}

    tier_engine.quota.increment(account_id, "max_categories", delta=20, now=T)
    full = tier_engine.quota.check_access(account_id, "max_categories", now=T)

    assert (full.access_granted, full.feature_available, full.usage_within_limits) == (False, True, False)
    assert full.reason == USAGE_LIMIT_EXCEEDED
    assert (full.current_usage, full.remaining) == (20, 0)
    assert tier_engine.quota.get_usage(account_id)["max_categories"].current_usage == 20


def test_check_access_reports_missing_and_disabled_features(tier_engine, make_account) -> None:
    account_id = make_account(plan="free")

    disabled = tier_engine.quota.check_access(account_id, "analytics_access", now=T)
    unknown = tier_engine.quota.check_access(account_id, "teleportation", now=T)

    assert (disabled.access_granted, disabled.feature_available, disabled.reason) == (False, False, FEATURE_NOT_AVAILABLE)
    assert (unknown.access_granted, unknown.feature_available, unknown.reason) == (False, False, FEATURE_NOT_DEFINED)
    assert unknown.limit is None


def test_check_access_unlimited_and_due_reset(tier_engine, make_account) -> None:
    premium_id = make_account(plan="premium", expires_at=T + timedelta(days=30))
    tier_engine.quota.increment(premium_id, "max_products", delta=5_000, now=T)
    unlimited = tier_engine.quota.check_access(premium_id, "max_products", now=T)
    assert (unlimited.access_granted, unlimited.limit, unlimited.remaining) == (True, None, None)

    free_id = make_account(plan="free")
    tier_engine.quota.increment(free_id, "max_categories", delta=20, now=T - timedelta(days=31))
    lapsed = tier_engine.quota.check_access(free_id, "max_categories", now=T)
    assert (lapsed.access_granted, lapsed.current_usage, lapsed.limit) == (True, 0, 20)

    with pytest.raises(AccountNotFoundError):
        tier_engine.quota.check_access(uuid.uuid4(), "max_products", now=T)
