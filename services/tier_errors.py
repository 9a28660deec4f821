"""Exception taxonomy for the tier lifecycle engine."""

from __future__ import annotations

from typing import Any, Dict, Optional


class TierEngineError(RuntimeError):
    """Base class for tier engine failures."""


class TierInvariantError(TierEngineError):
    """Raised when an account row violates a plan invariant (e.g. premium without expiry)."""

    def __init__(self, account_id: Any, message: str) -> None:
        super().__init__(message)
        self.account_id = account_id


class AccountNotFoundError(TierEngineError):
    """Raised when an operation targets an account that does not exist."""


class AuditWriteError(TierEngineError):
    """Raised when an audit entry cannot be persisted."""


class NotificationDispatchError(TierEngineError):
    """Raised by dispatchers when a notification cannot be delivered."""


class UsageConflictError(TierEngineError):
    """Raised when a concurrent writer updated the same usage row first."""


class QuotaError(ValueError):
    """Base class for user-facing quota outcomes."""

    code = "tier.quota_error"

    def __init__(
        self,
        message: str,
        *,
        feature: str,
        plan_tier: str,
        current_usage: int = 0,
        limit: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.feature = feature
        self.plan_tier = plan_tier
        self.current_usage = current_usage
        self.limit = limit

    def to_detail(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "feature": self.feature,
            "planTier": self.plan_tier,
            "currentUsage": self.current_usage,
            "limit": self.limit,
        }


class QuotaExceeded(QuotaError):
    code = "tier.quota_exceeded"


class FeatureUnavailable(QuotaError):
    code = "tier.feature_unavailable"


class FeatureNotDefined(QuotaError):
    code = "tier.feature_not_defined"


__all__ = [
    "AccountNotFoundError",
    "AuditWriteError",
    "FeatureNotDefined",
    "FeatureUnavailable",
    "NotificationDispatchError",
    "QuotaError",
    "QuotaExceeded",
    "TierEngineError",
    "TierInvariantError",
    "UsageConflictError",
]
