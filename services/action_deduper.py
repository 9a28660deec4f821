"""Durable, epoch-scoped dedup of scheduler actions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from core.timeutils import ensure_utc
from services.audit_log import AuditRecorder

logger = logging.getLogger(__name__)


class ActionDeduper:
    """Answers "has this action already fired for the account's current expiry?".

    The epoch of an action is the ``plan_expires_at`` value it was fired for.
    A renewal writes a new expiry, which opens a new epoch and re-enables the
    warning and grace notifications. Nothing is kept in memory, so restarts and
    overlapping sweeps see the same answer.
    """

    def __init__(self, audit_recorder: AuditRecorder) -> None:
        self._audit = audit_recorder

    def should_fire(self, account_id: uuid.UUID, action: str, epoch: Optional[datetime]) -> bool:
        latest = self._audit.latest_success(account_id, action)
        if latest is None:
            return True

        current_epoch = _epoch_key(epoch)
        if _epoch_key(latest.epoch) == current_epoch:
            logger.debug(
                "tier.dedup.suppressed",
                extra={"account_id": str(account_id), "action": action, "epoch": str(current_epoch)},
            )
            return False
        return True


def _epoch_key(value: Optional[datetime]) -> Optional[datetime]:
    normalized = ensure_utc(value)
    return normalized.replace(microsecond=0) if normalized is not None else None


__all__ = ["ActionDeduper"]
