"""DB-backed audit logging for tier actions.

Audit rows double as the durable "already happened" signal the scheduler
dedups against, so unlike most best-effort logging in the codebase a failed
write is surfaced to the caller as :class:`AuditWriteError`.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.plan_constants import AUDIT_RESOURCE, AuditAction, ChangeReason
from core.timeutils import ensure_utc, utcnow
from models.audit_log import ActionAuditEntry
from models.tier import TierHistoryEntry
from services.tier_errors import AuditWriteError
from services.tier_history_store import TierHistoryRecord

logger = logging.getLogger(__name__)


def _normalize_details(payload: Mapping[str, Any]) -> Dict[str, Any]:
    def coerce(value: Any) -> Any:
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, datetime):
            return ensure_utc(value).isoformat()  # type: ignore[union-attr]
        if isinstance(value, Mapping):
            return {str(key): coerce(val) for key, val in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [coerce(item) for item in value]
        return str(value)

    return {str(key): coerce(val) for key, val in payload.items()}


@dataclass(frozen=True)
class AuditEntry:
    action: str
    account_id: Optional[uuid.UUID] = None
    success: bool = True
    epoch: Optional[datetime] = None
    history_id: Optional[uuid.UUID] = None
    resource: str = AUDIT_RESOURCE
    details: Mapping[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class AuditRecord:
    id: uuid.UUID
    account_id: Optional[uuid.UUID]
    action: str
    success: bool
    epoch: Optional[datetime]
    details: Mapping[str, Any]
    created_at: datetime
    history_id: Optional[uuid.UUID] = None

    @classmethod
    def from_row(cls, row: ActionAuditEntry) -> "AuditRecord":
        return cls(
            id=row.id,
            account_id=row.account_id,
            action=row.action,
            success=bool(row.success),
            epoch=ensure_utc(row.epoch),
            details=dict(row.details or {}),
            created_at=ensure_utc(row.created_at),  # type: ignore[arg-type]
            history_id=row.history_id,
        )


class AuditRecorder:
    """Owns ``audit_logs`` rows: writes entries and answers read-only lookups."""

    def __init__(self, *, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def log(self, entry: AuditEntry) -> uuid.UUID:
        """Persist ``entry``; raises :class:`AuditWriteError` on any persistence failure."""
        row = ActionAuditEntry(
            id=uuid.uuid4(),
            account_id=entry.account_id,
            action=entry.action,
            resource=entry.resource,
            epoch=entry.epoch,
            history_id=entry.history_id,
            details=_normalize_details(entry.details),
            success=entry.success,
            created_at=entry.timestamp or utcnow(),
        )
        entry_id = row.id
        session = self._session_factory()
        try:
            session.add(row)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(
                "Failed to persist audit entry action=%s account=%s.",
                entry.action,
                entry.account_id,
            )
            raise AuditWriteError(f"audit write failed for action={entry.action}: {exc}") from exc
        finally:
            session.close()
        return entry_id

    def latest_success(self, account_id: uuid.UUID, action: str) -> Optional[AuditRecord]:
        """Most recent successful entry for ``(account_id, action)``."""
        session = self._session_factory()
        try:
            row = session.execute(
                select(ActionAuditEntry)
                .where(
                    ActionAuditEntry.account_id == account_id,
                    ActionAuditEntry.action == action,
                    ActionAuditEntry.success.is_(True),
                )
                .order_by(ActionAuditEntry.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return AuditRecord.from_row(row) if row is not None else None
        finally:
            session.close()

    def list_for_account(self, account_id: uuid.UUID, *, action: Optional[str] = None) -> List[AuditRecord]:
        session = self._session_factory()
        try:
            stmt = select(ActionAuditEntry).where(ActionAuditEntry.account_id == account_id)
            if action:
                stmt = stmt.where(ActionAuditEntry.action == action)
            rows = session.execute(stmt.order_by(ActionAuditEntry.created_at.asc())).scalars().all()
            return [AuditRecord.from_row(row) for row in rows]
        finally:
            session.close()

    def unaudited_expirations(
        self,
        *,
        since: datetime,
        until: datetime,
        limit: int = 200,
    ) -> List[TierHistoryRecord]:
        """Expiration history rows in ``[since, until]`` with no successful downgrade entry pointing at them."""
        audited = (
            select(ActionAuditEntry.id)
            .where(
                ActionAuditEntry.history_id == TierHistoryEntry.id,
                ActionAuditEntry.action == AuditAction.DOWNGRADED.value,
                ActionAuditEntry.success.is_(True),
            )
            .exists()
        )
        session = self._session_factory()
        try:
            rows = session.execute(
                select(TierHistoryEntry)
                .where(
                    TierHistoryEntry.change_reason == ChangeReason.EXPIRATION.value,
                    TierHistoryEntry.effective_date >= since,
                    TierHistoryEntry.effective_date <= until,
                    ~audited,
                )
                .order_by(TierHistoryEntry.effective_date.asc())
                .limit(limit)
            ).scalars().all()
            return [TierHistoryRecord.from_row(row) for row in rows]
        finally:
            session.close()


__all__ = ["AuditEntry", "AuditRecord", "AuditRecorder"]
