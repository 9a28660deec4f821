"""Append-only ledger of plan changes."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.plan_constants import ChangeReason, PlanTier
from core.timeutils import ensure_utc
from models.tier import TierHistoryEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierHistoryRecord:
    id: uuid.UUID
    account_id: uuid.UUID
    previous_plan: Optional[PlanTier]
    new_plan: PlanTier
    change_reason: ChangeReason
    changed_by: Optional[uuid.UUID]
    effective_date: datetime
    notes: Optional[str]

    @classmethod
    def from_row(cls, row: TierHistoryEntry) -> "TierHistoryRecord":
        return cls(
            id=row.id,
            account_id=row.account_id,
            previous_plan=PlanTier(row.previous_plan) if row.previous_plan else None,
            new_plan=PlanTier(row.new_plan),
            change_reason=ChangeReason(row.change_reason),
            changed_by=row.changed_by,
            effective_date=ensure_utc(row.effective_date),  # type: ignore[arg-type]
            notes=row.notes,
        )


class TierHistoryStore:
    """Writes and reads ``user_tier_history``. There is no update or delete path."""

    def record(
        self,
        session: Session,
        *,
        account_id: uuid.UUID,
        previous_plan: Optional[PlanTier],
        new_plan: PlanTier,
        reason: ChangeReason,
        effective_date: datetime,
        notes: Optional[str] = None,
        changed_by: Optional[uuid.UUID] = None,
    ) -> uuid.UUID:
        """Stage one history row inside the caller's transaction and return its id.

        ``effective_date`` never moves backwards for an account: if the caller's
        clock is behind the latest entry, the latest entry's date is reused.
        """
        effective = ensure_utc(effective_date)
        latest = ensure_utc(
            session.execute(
                select(func.max(TierHistoryEntry.effective_date)).where(TierHistoryEntry.account_id == account_id)
            ).scalar()
        )
        if latest is not None and effective is not None and effective < latest:
            logger.warning(
                "History effective_date %s precedes latest %s for account=%s; clamping.",
                effective.isoformat(),
                latest.isoformat(),
                account_id,
            )
            effective = latest

        entry = TierHistoryEntry(
            id=uuid.uuid4(),
            account_id=account_id,
            previous_plan=previous_plan.value if previous_plan else None,
            new_plan=new_plan.value,
            change_reason=reason.value,
            changed_by=changed_by,
            effective_date=effective,
            notes=notes,
        )
        session.add(entry)
        session.flush()
        return entry.id

    def list_for_account(self, session: Session, account_id: uuid.UUID) -> List[TierHistoryRecord]:
        rows = session.execute(
            select(TierHistoryEntry)
            .where(TierHistoryEntry.account_id == account_id)
            .order_by(TierHistoryEntry.effective_date.asc(), TierHistoryEntry.created_at.asc())
        ).scalars().all()
        return [TierHistoryRecord.from_row(row) for row in rows]


__all__ = ["TierHistoryRecord", "TierHistoryStore"]
