from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from services.tier_errors import AccountNotFoundError
from services.tier_status_service import get_tier_status

T = datetime(2025, 8, 8, 14, 15, tzinfo=timezone.utc)


def _status(tier_engine, account_id, now=T):
    return get_tier_status(
        account_id,
        repository=tier_engine.repository,
        catalog=tier_engine.catalog,
        quota_tracker=tier_engine.quota,
        config=tier_engine.config,
        now=now,
    )


def test_status_of_account_in_grace_period(tier_engine, make_account) -> None:
    expires_at = T - timedelta(days=3)
    account_id = make_account(expires_at=expires_at)
    tier_engine.quota.increment(account_id, "max_products", delta=3, now=T - timedelta(days=5))

    status = _status(tier_engine, account_id)

    assert status["plan"] == "premium"
    assert status["lifecycle_state"] == "grace_continuing"
    assert status["days_until_expiration"] == -3
    assert status["grace_period_active"] is True
    assert status["grace_period_expires_at"] == (expires_at + timedelta(days=7)).isoformat()
    assert status["tier_features"]["max_products"] == {"enabled": True, "limit": None, "unlimited": True}
    assert status["current_usage"] == {"max_products": {"current": 3, "limit": None}}


def test_status_of_free_account(tier_engine, make_account) -> None:
    account_id = make_account(plan="free")

    status = _status(tier_engine, account_id)

    assert status["lifecycle_state"] == "active"
    assert status["days_until_expiration"] is None
    assert status["grace_period_active"] is False
    assert status["tier_features"]["analytics_access"] == {"enabled": False, "limit": None, "unlimited": False}
    assert status["tier_features"]["max_products"]["limit"] == 50
    assert status["current_usage"] == {}


def test_status_of_unknown_account(tier_engine) -> None:
    with pytest.raises(AccountNotFoundError):
        _status(tier_engine, uuid.uuid4())
