"""Per-account, per-feature usage counters enforced against tier limits."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.plan_constants import AuditAction, PlanTier, normalize_plan_tier
from core.tier_config import TierEngineConfig
from core.timeutils import ensure_utc, utcnow
from models.account import Account
from models.tier import UserFeatureUsage
from services import tier_metrics
from services.account_repository import AccountSnapshot
from services.audit_log import AuditEntry, AuditRecorder
from services.notification_service import NotificationDispatcher
from services.tier_catalog import FeatureDefinition, TierCatalog
from services.tier_errors import (
    AccountNotFoundError,
    AuditWriteError,
    FeatureNotDefined,
    FeatureUnavailable,
    QuotaExceeded,
    UsageConflictError,
)

logger = logging.getLogger(__name__)

FEATURE_NOT_DEFINED = "feature_not_defined"
FEATURE_NOT_AVAILABLE = "feature_not_available"
USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"


@dataclass(frozen=True)
class UsageResult:
    feature_name: str
    current_usage: int
    limit: Optional[int]
    last_reset_at: datetime

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(self.limit - self.current_usage, 0)


@dataclass(frozen=True)
class UsageThreshold:
    threshold_exceeded: bool
    current_usage: int
    limit: Optional[int]
    percentage: float
    warning_message: Optional[str]


@dataclass(frozen=True)
class FeatureAccess:
    """Read-only answer to "may this account use ``feature_name`` once more?"."""

    feature_name: str
    access_granted: bool
    feature_available: bool
    usage_within_limits: bool
    current_usage: int = 0
    limit: Optional[int] = None
    reason: Optional[str] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(self.limit - self.current_usage, 0)


class UsageQuotaTracker:
    """Sole writer of ``user_tier_features`` rows.

    Rows are read ``FOR UPDATE`` and carry an optimistic version counter, so a
    live ``increment`` racing a scheduler-triggered reset either waits for the
    row lock or fails with :class:`UsageConflictError`; it never loses an update.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        catalog: TierCatalog,
        config: TierEngineConfig,
        dispatcher: Optional[NotificationDispatcher] = None,
        audit_recorder: Optional[AuditRecorder] = None,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._config = config
        self._dispatcher = dispatcher
        self._audit = audit_recorder

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def increment(
        self,
        account_id: uuid.UUID,
        feature_name: str,
        delta: int = 1,
        *,
        now: Optional[datetime] = None,
    ) -> UsageResult:
        if delta < 1:
            raise ValueError("delta must be a positive integer.")
        reference = ensure_utc(now) or utcnow()
        session = self._session_factory()
        try:
            account = self._load_account(session, account_id)
            tier = normalize_plan_tier(account.plan)
            definition = self._require_definition(session, tier, feature_name)
            row = self._get_or_create_row(session, account_id, definition, reference)
            self._reset_row_if_due(row, definition, reference)

            if row.usage_limit is not None and row.current_usage + delta > row.usage_limit:
                exceeded = QuotaExceeded(
                    f"Usage limit reached for {feature_name}.",
                    feature=feature_name,
                    plan_tier=tier.value,
                    current_usage=row.current_usage,
                    limit=row.usage_limit,
                )
                self._commit(session, account_id, feature_name)
                snapshot = AccountSnapshot.from_row(account)
            else:
                row.current_usage += delta
                result = self._to_result(row)
                self._commit(session, account_id, feature_name)
                return result
        finally:
            session.close()

        tier_metrics.record_quota_exceeded(feature_name, tier.value)
        logger.info(
            "tier.quota.exceeded",
            extra={"account_id": str(account_id), "feature": feature_name, "limit": exceeded.limit},
        )
        self._audit_quota_exceeded(account_id, exceeded)
        if tier is PlanTier.FREE:
            self._send_upgrade_prompt(snapshot, feature_name)
        raise exceeded

    def decrement(
        self,
        account_id: uuid.UUID,
        feature_name: str,
        delta: int = 1,
        *,
        now: Optional[datetime] = None,
    ) -> UsageResult:
        if delta < 1:
            raise ValueError("delta must be a positive integer.")
        reference = ensure_utc(now) or utcnow()
        session = self._session_factory()
        try:
            row = self._lock_row(session, account_id, feature_name)
            if row is None:
                return UsageResult(feature_name=feature_name, current_usage=0, limit=None, last_reset_at=reference)
            row.current_usage = max(row.current_usage - delta, 0)
            result = self._to_result(row)
            self._commit(session, account_id, feature_name)
            return result
        finally:
            session.close()

    def reset_if_due(self, account_id: uuid.UUID, feature_name: str, now: Optional[datetime] = None) -> bool:
        """Reset the counter when ``usage_reset_interval`` has elapsed since ``last_reset_at``."""
        reference = ensure_utc(now) or utcnow()
        session = self._session_factory()
        try:
            row = self._lock_row(session, account_id, feature_name)
            if row is None:
                return False
            account = self._load_account(session, account_id)
            definition = self._catalog.get_definition(normalize_plan_tier(account.plan), feature_name, session=session)
            reset = self._reset_row_if_due(row, definition, reference)
            if reset:
                self._commit(session, account_id, feature_name)
            return reset
        finally:
            session.close()

    def reset_for_tier_change(
        self,
        session: Session,
        account_id: uuid.UUID,
        new_tier: PlanTier,
        now: datetime,
    ) -> int:
        """Unconditionally reset every counter of the account inside the caller's transaction.

        Limits are re-snapshotted from ``new_tier``. Returns the number of rows reset.
        """
        features = self._catalog.features_for_tier(new_tier, session=session)
        rows = session.execute(
            select(UserFeatureUsage).where(UserFeatureUsage.account_id == account_id).with_for_update()
        ).scalars().all()
        for row in rows:
            definition = features.get(row.feature_name)
            row.current_usage = 0
            row.usage_limit = definition.limit if definition is not None else None
            row.last_reset_at = now
        session.flush()
        if rows:
            logger.info("Reset %d usage counters for account=%s (tier=%s).", len(rows), account_id, new_tier.value)
        return len(rows)

    def get_usage(self, account_id: uuid.UUID) -> Dict[str, UsageResult]:
        session = self._session_factory()
        try:
            rows = session.execute(
                select(UserFeatureUsage).where(UserFeatureUsage.account_id == account_id)
            ).scalars().all()
            return {row.feature_name: self._to_result(row) for row in rows}
        finally:
            session.close()

    def check_access(
        self,
        account_id: uuid.UUID,
        feature_name: str,
        *,
        now: Optional[datetime] = None,
    ) -> FeatureAccess:
        """Evaluate the account's current tier and counter for ``feature_name`` without consuming usage.

        A counter whose reset interval has elapsed is reported as 0 against the
        tier's current limit, which is what the next ``increment`` would see.
        """
        reference = ensure_utc(now) or utcnow()
        session = self._session_factory()
        try:
            account = self._load_account(session, account_id)
            tier = normalize_plan_tier(account.plan)
            definition = self._catalog.get_definition(tier, feature_name, session=session)
            if definition is None:
                return FeatureAccess(feature_name, False, False, False, reason=FEATURE_NOT_DEFINED)
            if not definition.enabled:
                return FeatureAccess(feature_name, False, False, False, reason=FEATURE_NOT_AVAILABLE)

            row = session.execute(
                select(UserFeatureUsage).where(
                    UserFeatureUsage.account_id == account_id,
                    UserFeatureUsage.feature_name == feature_name,
                )
            ).scalar_one_or_none()
            if row is None or self._reset_due(row, reference):
                current, limit = 0, definition.limit
            else:
                current, limit = int(row.current_usage or 0), row.usage_limit
        finally:
            session.close()

        within = limit is None or current < limit
        return FeatureAccess(
            feature_name=feature_name,
            access_granted=within,
            feature_available=True,
            usage_within_limits=within,
            current_usage=current,
            limit=limit,
            reason=None if within else USAGE_LIMIT_EXCEEDED,
        )

    def check_usage_threshold(
        self,
        account_id: uuid.UUID,
        feature_name: str,
        threshold: Optional[float] = None,
    ) -> UsageThreshold:
        limit_ratio = threshold if threshold is not None else self._config.usage_warning_threshold
        usage = self.get_usage(account_id).get(feature_name)
        if usage is None:
            return UsageThreshold(False, 0, None, 0.0, None)

        percentage = usage.current_usage / usage.limit if usage.limit else 0.0
        exceeded = bool(usage.limit) and percentage >= limit_ratio
        message = (
            f"You are approaching your {feature_name} limit ({round(percentage * 100)}% used)"
            if exceeded
            else None
        )
        return UsageThreshold(exceeded, usage.current_usage, usage.limit, percentage, message)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load_account(session: Session, account_id: uuid.UUID) -> Account:
        account = session.get(Account, account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found.")
        return account

    def _require_definition(self, session: Session, tier: PlanTier, feature_name: str) -> FeatureDefinition:
        definition = self._catalog.get_definition(tier, feature_name, session=session)
        if definition is None:
            raise FeatureNotDefined(
                f"Feature {feature_name} is not defined for tier {tier.value}.",
                feature=feature_name,
                plan_tier=tier.value,
            )
        if not definition.enabled:
            raise FeatureUnavailable(
                f"Feature {feature_name} is not available on the {tier.value} plan.",
                feature=feature_name,
                plan_tier=tier.value,
            )
        return definition

    @staticmethod
    def _lock_row(session: Session, account_id: uuid.UUID, feature_name: str) -> Optional[UserFeatureUsage]:
        return session.execute(
            select(UserFeatureUsage)
            .where(UserFeatureUsage.account_id == account_id, UserFeatureUsage.feature_name == feature_name)
            .with_for_update()
        ).scalar_one_or_none()

    def _get_or_create_row(
        self,
        session: Session,
        account_id: uuid.UUID,
        definition: FeatureDefinition,
        now: datetime,
    ) -> UserFeatureUsage:
        row = self._lock_row(session, account_id, definition.feature_name)
        if row is not None:
            return row
        row = UserFeatureUsage(
            id=uuid.uuid4(),
            account_id=account_id,
            feature_name=definition.feature_name,
            current_usage=0,
            usage_limit=definition.limit,
            last_reset_at=now,
        )
        session.add(row)
        try:
            session.flush()
        except IntegrityError:
            # Another writer created the row first.
            session.rollback()
            existing = self._lock_row(session, account_id, definition.feature_name)
            if existing is None:
                raise
            return existing
        return row

    def _reset_row_if_due(
        self,
        row: UserFeatureUsage,
        definition: Optional[FeatureDefinition],
        now: datetime,
    ) -> bool:
        if not self._reset_due(row, now):
            return False
        row.current_usage = 0
        row.usage_limit = definition.limit if definition is not None else row.usage_limit
        row.last_reset_at = now
        logger.debug("Usage counter reset for account=%s feature=%s", row.account_id, row.feature_name)
        return True

    def _reset_due(self, row: UserFeatureUsage, now: datetime) -> bool:
        last_reset = ensure_utc(row.last_reset_at)
        return last_reset is None or now - last_reset >= self._config.usage_reset_interval

    @staticmethod
    def _commit(session: Session, account_id: uuid.UUID, feature_name: str) -> None:
        try:
            session.commit()
        except StaleDataError as exc:
            session.rollback()
            raise UsageConflictError(
                f"Concurrent update on usage row account={account_id} feature={feature_name}."
            ) from exc

    @staticmethod
    def _to_result(row: UserFeatureUsage) -> UsageResult:
        return UsageResult(
            feature_name=row.feature_name,
            current_usage=int(row.current_usage or 0),
            limit=row.usage_limit,
            last_reset_at=ensure_utc(row.last_reset_at),  # type: ignore[arg-type]
        )

    def _audit_quota_exceeded(self, account_id: uuid.UUID, exceeded: QuotaExceeded) -> None:
        if self._audit is None:
            return
        try:
            self._audit.log(
                AuditEntry(
                    action=AuditAction.QUOTA_EXCEEDED.value,
                    account_id=account_id,
                    details=exceeded.to_detail(),
                )
            )
        except AuditWriteError:
            logger.warning("Quota rejection not audited for account=%s feature=%s", account_id, exceeded.feature)

    def _send_upgrade_prompt(self, account: AccountSnapshot, feature_name: str) -> None:
        if self._dispatcher is None or not self._config.upgrade_prompt_enabled:
            return
        try:
            result = self._dispatcher.send_upgrade_prompt(account, feature_name)
        except Exception as exc:  # pragma: no cover - best effort
            logger.warning("Upgrade prompt failed for account=%s feature=%s: %s", account.id, feature_name, exc)
            return
        if not result.ok:
            logger.warning(
                "Upgrade prompt not delivered for account=%s feature=%s: %s",
                account.id,
                feature_name,
                result.error,
            )


__all__ = [
    "FEATURE_NOT_AVAILABLE",
    "FEATURE_NOT_DEFINED",
    "USAGE_LIMIT_EXCEEDED",
    "FeatureAccess",
    "UsageQuotaTracker",
    "UsageResult",
    "UsageThreshold",
]
