"""Account reads for the sweep and the transactional plan-change unit."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Iterator, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.plan_constants import ChangeReason, PlanTier, normalize_plan_tier
from core.timeutils import ensure_utc
from models.account import Account
from services.tier_errors import AccountNotFoundError
from services.tier_history_store import TierHistoryStore

if TYPE_CHECKING:  # pragma: no cover
    from services.usage_quota_service import UsageQuotaTracker

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass(frozen=True)
class AccountSnapshot:
    """Detached, immutable view of an account row."""

    id: uuid.UUID
    email: str
    full_name: Optional[str]
    plan: PlanTier
    plan_expires_at: Optional[datetime]
    is_active: bool

    @classmethod
    def from_row(cls, row: Account) -> "AccountSnapshot":
        return cls(
            id=row.id,
            email=row.email,
            full_name=row.full_name,
            plan=normalize_plan_tier(row.plan),
            plan_expires_at=ensure_utc(row.plan_expires_at),
            is_active=bool(row.is_active),
        )


@dataclass(frozen=True)
class PlanChangeOutcome:
    account: AccountSnapshot
    previous_plan: PlanTier
    previous_expires_at: Optional[datetime]
    history_id: uuid.UUID
    quotas_reset: int


class AccountRepository:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        history_store: TierHistoryStore,
        quota_tracker: "UsageQuotaTracker",
    ) -> None:
        self._session_factory = session_factory
        self._history = history_store
        self._quota = quota_tracker

    def get(self, account_id: uuid.UUID) -> Optional[AccountSnapshot]:
        session = self._session_factory()
        try:
            row = session.get(Account, account_id)
            return AccountSnapshot.from_row(row) if row is not None else None
        finally:
            session.close()

    def list_active_premium(
        self,
        reference_time: datetime,
        *,
        horizon: Optional[timedelta] = None,
        batch_size: int = 200,
    ) -> Iterator[AccountSnapshot]:
        """Yield active premium accounts in id order, one keyset page at a time.

        With ``horizon`` set, accounts expiring later than ``reference_time + horizon``
        are left out. Accounts without an expiry are always yielded so the caller can
        flag them.
        """
        last_id: Optional[uuid.UUID] = None
        cutoff = ensure_utc(reference_time) + horizon if horizon is not None else None  # type: ignore[operator]
        while True:
            stmt = (
                select(Account)
                .where(Account.is_active.is_(True), Account.plan == PlanTier.PREMIUM.value)
                .order_by(Account.id)
                .limit(batch_size)
            )
            if cutoff is not None:
                stmt = stmt.where(or_(Account.plan_expires_at.is_(None), Account.plan_expires_at <= cutoff))
            if last_id is not None:
                stmt = stmt.where(Account.id > last_id)

            session = self._session_factory()
            try:
                page = [AccountSnapshot.from_row(row) for row in session.execute(stmt).scalars().all()]
            finally:
                session.close()

            if not page:
                return
            yield from page
            if len(page) < batch_size:
                return
            last_id = page[-1].id

    def apply_downgrade(
        self,
        account_id: uuid.UUID,
        *,
        effective_date: datetime,
        expected_expires_at: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> Optional[PlanChangeOutcome]:
        """Flip an expired premium account to free as one transaction.

        Returns ``None`` when the account is no longer premium or its expiry moved
        since it was classified (renewed in the meantime); nothing is written then.
        """
        return self.apply_plan_change(
            account_id,
            new_plan=PlanTier.FREE,
            reason=ChangeReason.EXPIRATION,
            effective_date=effective_date,
            new_expires_at=None,
            require_plan=PlanTier.PREMIUM,
            expected_expires_at=expected_expires_at,
            notes=notes or "Automatic downgrade after grace period",
        )

    def apply_plan_change(
        self,
        account_id: uuid.UUID,
        *,
        new_plan: PlanTier,
        reason: ChangeReason,
        effective_date: datetime,
        new_expires_at: Optional[datetime] = None,
        changed_by: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
        require_plan: Optional[PlanTier] = None,
        expected_expires_at: object = _UNSET,
    ) -> Optional[PlanChangeOutcome]:
        """Update the plan, append the history row and reset quotas atomically.

        The account row is locked for the duration. Returns ``None`` (no writes)
        when ``require_plan`` or ``expected_expires_at`` no longer match, or when
        the plan would not change.
        """
        if new_plan is PlanTier.FREE:
            new_expires_at = None
        effective = ensure_utc(effective_date)
        session = self._session_factory()
        try:
            account = session.execute(
                select(Account).where(Account.id == account_id).with_for_update()
            ).scalar_one_or_none()
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found.")

            previous_plan = normalize_plan_tier(account.plan)
            previous_expires_at = ensure_utc(account.plan_expires_at)
            if require_plan is not None and previous_plan is not require_plan:
                logger.info("Plan change skipped for account=%s: plan is %s.", account_id, previous_plan.value)
                session.rollback()
                return None
            if expected_expires_at is not _UNSET and _same_instant(previous_expires_at, expected_expires_at) is False:
                logger.info("Plan change skipped for account=%s: expiry changed since classification.", account_id)
                session.rollback()
                return None
            if previous_plan is new_plan:
                logger.info("Plan change skipped for account=%s: already on %s.", account_id, new_plan.value)
                session.rollback()
                return None

            account.plan = new_plan.value
            account.plan_expires_at = ensure_utc(new_expires_at)
            history_id = self._history.record(
                session,
                account_id=account_id,
                previous_plan=previous_plan,
                new_plan=new_plan,
                reason=reason,
                effective_date=effective,  # type: ignore[arg-type]
                notes=notes,
                changed_by=changed_by,
            )
            reset = self._quota.reset_for_tier_change(session, account_id, new_plan, effective)  # type: ignore[arg-type]
            session.commit()
            snapshot = AccountSnapshot.from_row(account)
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Plan change transaction failed for account=%s", account_id)
            raise
        finally:
            session.close()

        logger.info(
            "tier.plan_changed",
            extra={
                "account_id": str(account_id),
                "previous_plan": previous_plan.value,
                "new_plan": new_plan.value,
                "reason": reason.value,
            },
        )
        return PlanChangeOutcome(
            account=snapshot,
            previous_plan=previous_plan,
            previous_expires_at=previous_expires_at,
            history_id=history_id,
            quotas_reset=reset,
        )

    def set_expiry(self, account_id: uuid.UUID, expires_at: datetime) -> AccountSnapshot:
        """Move ``plan_expires_at`` of a premium account (renewal); no plan change, no history row."""
        session = self._session_factory()
        try:
            account = session.execute(
                select(Account).where(Account.id == account_id).with_for_update()
            ).scalar_one_or_none()
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found.")
            if normalize_plan_tier(account.plan) is not PlanTier.PREMIUM:
                raise ValueError("Only premium accounts carry an expiry.")
            account.plan_expires_at = ensure_utc(expires_at)
            session.commit()
            return AccountSnapshot.from_row(account)
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()


def _same_instant(left: Optional[datetime], right: object) -> bool:
    if left is None or right is None:
        return left is right
    if not isinstance(right, datetime):
        return False
    return left.replace(microsecond=0) == ensure_utc(right).replace(microsecond=0)  # type: ignore[union-attr]


__all__ = ["AccountRepository", "AccountSnapshot", "PlanChangeOutcome"]
