"""Operator- and billing-driven plan changes outside the automatic sweep."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from core.plan_constants import AuditAction, ChangeReason, PlanTier, normalize_plan_tier
from core.timeutils import ensure_utc, utcnow
from services.account_repository import AccountRepository, AccountSnapshot, PlanChangeOutcome
from services.audit_log import AuditEntry, AuditRecorder
from services.notification_service import NotificationDispatcher
from services.tier_errors import AccountNotFoundError, TierInvariantError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanChangeResult:
    changed: bool
    account: AccountSnapshot
    history_id: Optional[uuid.UUID] = None
    notification: str = "skipped"


class PlanChangeService:
    """Applies upgrades, manual downgrades and renewals.

    Plan flips share the downgrade unit of work in :class:`AccountRepository`
    (plan update, one history row, quota reset in one transaction); the
    tier-change notification and the ``tier_plan_changed`` audit entry follow
    the commit.
    """

    def __init__(
        self,
        *,
        repository: AccountRepository,
        audit_recorder: AuditRecorder,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self._repository = repository
        self._audit = audit_recorder
        self._dispatcher = dispatcher

    def change_plan(
        self,
        account_id: uuid.UUID,
        new_plan: str | PlanTier,
        *,
        reason: ChangeReason,
        changed_by: Optional[uuid.UUID] = None,
        expires_at: Optional[datetime] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PlanChangeResult:
        target = normalize_plan_tier(new_plan)
        if target is PlanTier.PREMIUM and expires_at is None:
            raise TierInvariantError(account_id, "premium plan requires expires_at")
        effective = ensure_utc(now) or utcnow()

        outcome = self._repository.apply_plan_change(
            account_id,
            new_plan=target,
            reason=reason,
            effective_date=effective,
            new_expires_at=expires_at,
            changed_by=changed_by,
            notes=notes,
        )
        if outcome is None:
            current = self._repository.get(account_id)
            if current is None:
                raise AccountNotFoundError(f"Account {account_id} not found.")
            return PlanChangeResult(changed=False, account=current)

        notification = self._notify(outcome, reason)
        self._audit.log(
            AuditEntry(
                action=AuditAction.PLAN_CHANGED.value,
                account_id=account_id,
                epoch=outcome.account.plan_expires_at,
                history_id=outcome.history_id,
                details={
                    "previousPlan": outcome.previous_plan.value,
                    "newPlan": target.value,
                    "reason": reason.value,
                    "changedBy": str(changed_by) if changed_by else None,
                    "historyId": str(outcome.history_id),
                    "quotasReset": outcome.quotas_reset,
                    "notification": notification,
                },
            )
        )
        return PlanChangeResult(
            changed=True,
            account=outcome.account,
            history_id=outcome.history_id,
            notification=notification,
        )

    def extend_subscription(self, account_id: uuid.UUID, expires_at: datetime) -> AccountSnapshot:
        """Renew a premium account. The new expiry opens a fresh warning/grace epoch."""
        snapshot = self._repository.set_expiry(account_id, expires_at)
        logger.info(
            "tier.subscription.extended",
            extra={"account_id": str(account_id), "expires_at": snapshot.plan_expires_at.isoformat()},  # type: ignore[union-attr]
        )
        return snapshot

    def _notify(self, outcome: PlanChangeOutcome, reason: ChangeReason) -> str:
        if self._dispatcher is None:
            return "skipped"
        try:
            result = self._dispatcher.send_tier_change(
                outcome.account,
                outcome.previous_plan.value,
                outcome.account.plan.value,
                reason.value,
            )
        except Exception as exc:
            logger.warning("Tier change notification failed for account=%s: %s", outcome.account.id, exc)
            return "failed"
        return "delivered" if result.ok else "failed"


__all__ = ["PlanChangeResult", "PlanChangeService"]
