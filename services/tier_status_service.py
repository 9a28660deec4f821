"""Read-only tier status view for an account."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from core.tier_config import TierEngineConfig
from core.timeutils import ensure_utc, utcnow
from services.account_repository import AccountRepository
from services.tier_catalog import TierCatalog
from services.tier_errors import AccountNotFoundError
from services.tier_state_machine import classify, days_until_expiration
from services.usage_quota_service import UsageQuotaTracker


def get_tier_status(
    account_id: uuid.UUID,
    *,
    repository: AccountRepository,
    catalog: TierCatalog,
    quota_tracker: UsageQuotaTracker,
    config: Optional[TierEngineConfig] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Plan, expiry, grace state, feature map and current usage of one account."""
    account = repository.get(account_id)
    if account is None:
        raise AccountNotFoundError(f"Account {account_id} not found.")
    reference = ensure_utc(now) or utcnow()
    classification = classify(account.plan, account.plan_expires_at, reference, config or TierEngineConfig())

    features = {
        name: {
            "enabled": definition.enabled,
            "limit": definition.limit,
            "unlimited": definition.unlimited,
        }
        for name, definition in catalog.features_for_tier(account.plan).items()
    }
    usage = {
        name: {"current": result.current_usage, "limit": result.limit}
        for name, result in quota_tracker.get_usage(account_id).items()
    }
    grace_end = classification.grace_period_end
    return {
        "account_id": str(account.id),
        "plan": account.plan.value,
        "plan_expires_at": account.plan_expires_at.isoformat() if account.plan_expires_at else None,
        "is_active": account.is_active,
        "lifecycle_state": classification.state.value,
        "days_until_expiration": days_until_expiration(account.plan_expires_at, reference),
        "grace_period_active": classification.in_grace_period,
        "grace_period_expires_at": grace_end.isoformat() if grace_end else None,
        "tier_features": features,
        "current_usage": usage,
    }


__all__ = ["get_tier_status"]
