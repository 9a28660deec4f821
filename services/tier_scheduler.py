"""Periodic sweep that drives accounts through the subscription lifecycle."""

from __future__ import annotations

import logging
import threading
import time
import uuid
import weakref
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from core.plan_constants import AuditAction, ChangeReason, LifecycleState, PlanTier
from core.tier_config import TierEngineConfig
from core.timeutils import ensure_utc, utcnow
from services import tier_metrics
from services.account_repository import AccountRepository, AccountSnapshot
from services.action_deduper import ActionDeduper
from services.audit_log import AuditEntry, AuditRecorder
from services.notification_service import NotificationDispatcher, NotificationResult
from services.tier_errors import (
    AuditWriteError,
    NotificationDispatchError,
    TierEngineError,
    TierInvariantError,
)
from services.tier_state_machine import Classification, classify

logger = logging.getLogger(__name__)

_WARNED = "warned"
_GRACED = "graced"
_DOWNGRADED = "downgraded"
_SKIPPED = "skipped"


@dataclass(frozen=True)
class AccountError:
    account_id: Optional[uuid.UUID]
    stage: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accountId": str(self.account_id) if self.account_id else None,
            "stage": self.stage,
            "message": self.message,
        }


@dataclass
class SweepSummary:
    reference_time: datetime
    dry_run: bool = False
    scanned: int = 0
    warned: int = 0
    graced: int = 0
    downgraded: int = 0
    skipped: int = 0
    audits_recovered: int = 0
    errors: List[AccountError] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "referenceTime": self.reference_time.isoformat(),
            "dryRun": self.dry_run,
            "scanned": self.scanned,
            "warned": self.warned,
            "graced": self.graced,
            "downgraded": self.downgraded,
            "skipped": self.skipped,
            "auditsRecovered": self.audits_recovered,
            "errors": [error.to_dict() for error in self.errors],
            "durationSeconds": round(self.duration_seconds, 3),
        }


_Outcome = Tuple[str, Optional[AccountError]]


class SchedulerRunner:
    """Runs one lifecycle sweep per ``run_once`` call.

    Every "already happened" decision reads durable state (audit rows, the
    account's plan), so the runner can be invoked at any cadence, restarted
    mid-sweep, or overlap with another sweep without firing an action twice
    for the same expiry. A failure on one account never stops the sweep.
    """

    def __init__(
        self,
        *,
        repository: AccountRepository,
        deduper: ActionDeduper,
        audit_recorder: AuditRecorder,
        dispatcher: NotificationDispatcher,
        config: Optional[TierEngineConfig] = None,
    ) -> None:
        self._repository = repository
        self._deduper = deduper
        self._audit = audit_recorder
        self._dispatcher = dispatcher
        self._config = config or TierEngineConfig()
        self._locks: "weakref.WeakValueDictionary[uuid.UUID, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def run_once(self, reference_time: Optional[datetime] = None, *, dry_run: bool = False) -> SweepSummary:
        now = ensure_utc(reference_time) or utcnow()
        summary = SweepSummary(reference_time=now, dry_run=dry_run)
        started = time.perf_counter()
        logger.info("tier.sweep.started", extra={"reference_time": now.isoformat(), "dry_run": dry_run})
        if not dry_run:
            self._repair_downgrade_audits(now, summary)

        accounts = self._repository.list_active_premium(now, batch_size=self._config.sweep_batch_size)
        try:
            if self._config.max_workers > 1:
                self._run_parallel(accounts, now, dry_run, summary)
            else:
                for account in accounts:
                    summary.scanned += 1
                    self._tally(summary, self._process_guarded(account, now, dry_run))
        except SQLAlchemyError as exc:
            logger.exception("Tier sweep aborted while listing accounts.")
            tier_metrics.record_account_error("list")
            summary.errors.append(AccountError(account_id=None, stage="list", message=str(exc)))

        summary.duration_seconds = time.perf_counter() - started
        tier_metrics.observe_sweep_duration(summary.duration_seconds)
        logger.info(
            "tier.sweep.completed",
            extra={
                "scanned": summary.scanned,
                "warned": summary.warned,
                "graced": summary.graced,
                "downgraded": summary.downgraded,
                "skipped": summary.skipped,
                "audits_recovered": summary.audits_recovered,
                "errors": len(summary.errors),
            },
        )
        return summary

    # ------------------------------------------------------------------
    # Sweep plumbing
    # ------------------------------------------------------------------

    def _run_parallel(
        self,
        accounts: Iterator[AccountSnapshot],
        now: datetime,
        dry_run: bool,
        summary: SweepSummary,
    ) -> None:
        seen: set[uuid.UUID] = set()
        pending: List[Future] = []
        with ThreadPoolExecutor(max_workers=self._config.max_workers, thread_name_prefix="tier-sweep") as pool:
            for account in accounts:
                if account.id in seen:
                    continue
                seen.add(account.id)
                summary.scanned += 1
                pending.append(pool.submit(self._process_guarded, account, now, dry_run))
                if len(pending) >= self._config.sweep_batch_size:
                    for future in pending:
                        self._tally(summary, future.result())
                    pending = []
            for future in pending:
                self._tally(summary, future.result())

    @staticmethod
    def _tally(summary: SweepSummary, outcome: _Outcome) -> None:
        kind, error = outcome
        if error is not None:
            summary.errors.append(error)
            return
        if kind == _WARNED:
            summary.warned += 1
        elif kind == _GRACED:
            summary.graced += 1
        elif kind == _DOWNGRADED:
            summary.downgraded += 1
        else:
            summary.skipped += 1

    @contextmanager
    def _account_lock(self, account_id: uuid.UUID) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
        with lock:
            yield

    def _process_guarded(self, account: AccountSnapshot, now: datetime, dry_run: bool) -> _Outcome:
        with self._account_lock(account.id):
            try:
                return self._process(account, now, dry_run), None
            except TierInvariantError as exc:
                logger.error("Tier invariant violated for account=%s: %s", exc.account_id, exc)
                return self._error(account.id, "invariant", exc)
            except AuditWriteError as exc:
                return self._error(account.id, "audit", exc)
            except SQLAlchemyError as exc:
                logger.exception("Database error while processing account=%s", account.id)
                return self._error(account.id, "database", exc)
            except TierEngineError as exc:
                logger.warning("Tier engine error for account=%s: %s", account.id, exc)
                return self._error(account.id, "engine", exc)
            except Exception as exc:  # pragma: no cover - isolation guard
                logger.exception("Unexpected error while processing account=%s", account.id)
                return self._error(account.id, "unexpected", exc)

    @staticmethod
    def _error(account_id: uuid.UUID, stage: str, exc: BaseException) -> _Outcome:
        tier_metrics.record_account_error(stage)
        return stage, AccountError(account_id=account_id, stage=stage, message=str(exc))

    # ------------------------------------------------------------------
    # Per-account lifecycle
    # ------------------------------------------------------------------

    def _process(self, account: AccountSnapshot, now: datetime, dry_run: bool) -> str:
        if account.plan is not PlanTier.PREMIUM:
            return _SKIPPED
        if account.plan_expires_at is None:
            raise TierInvariantError(account.id, "premium account has no plan_expires_at")

        classification = classify(account.plan, account.plan_expires_at, now, self._config)
        tier_metrics.record_state(classification.state.value)

        if classification.state is LifecycleState.EXPIRING_SOON:
            return self._send_warning(account, classification, dry_run)
        if classification.state is LifecycleState.GRACE_PERIOD:
            return self._send_grace_notice(account, classification, dry_run)
        if classification.state is LifecycleState.DOWNGRADED:
            return self._downgrade(account, classification, now, dry_run)
        return _SKIPPED

    def _send_warning(self, account: AccountSnapshot, classification: Classification, dry_run: bool) -> str:
        action = AuditAction.EXPIRING_WARNING.value
        epoch = account.plan_expires_at
        if not self._deduper.should_fire(account.id, action, epoch):
            tier_metrics.record_action(action, "deduplicated")
            return _SKIPPED
        if dry_run:
            return _WARNED

        days_left = classification.days_left or 0
        notification = self._notify(
            account,
            action,
            lambda: self._dispatcher.send_expiration_warning(account, days_left),
        )
        self._audit.log(
            AuditEntry(
                action=action,
                account_id=account.id,
                epoch=epoch,
                details={"daysLeft": days_left, "expiresAt": epoch, **notification},
            )
        )
        tier_metrics.record_action(action, "fired")
        logger.info("tier.expiring.warned", extra={"account_id": str(account.id), "days_left": days_left})
        return _WARNED

    def _send_grace_notice(self, account: AccountSnapshot, classification: Classification, dry_run: bool) -> str:
        action = AuditAction.GRACE_PERIOD.value
        epoch = account.plan_expires_at
        if not self._deduper.should_fire(account.id, action, epoch):
            tier_metrics.record_action(action, "deduplicated")
            return _SKIPPED
        if dry_run:
            return _GRACED

        grace_end = classification.grace_period_end
        notification = self._notify(
            account,
            action,
            lambda: self._dispatcher.send_grace_period(account, grace_end),  # type: ignore[arg-type]
        )
        self._audit.log(
            AuditEntry(
                action=action,
                account_id=account.id,
                epoch=epoch,
                details={"expiresAt": epoch, "gracePeriodEnd": grace_end, **notification},
            )
        )
        tier_metrics.record_action(action, "fired")
        logger.info("tier.grace.notified", extra={"account_id": str(account.id)})
        return _GRACED

    def _downgrade(
        self,
        account: AccountSnapshot,
        classification: Classification,
        now: datetime,
        dry_run: bool,
    ) -> str:
        action = AuditAction.DOWNGRADED.value
        if dry_run:
            return _DOWNGRADED

        try:
            outcome = self._repository.apply_downgrade(
                account.id,
                effective_date=now,
                expected_expires_at=account.plan_expires_at,
            )
        except SQLAlchemyError as exc:
            self._record_failure(account, action, exc)
            raise
        if outcome is None:
            # Renewed or already downgraded since the page was read.
            tier_metrics.record_action(action, "stale")
            return _SKIPPED

        notification = self._notify(
            outcome.account,
            action,
            lambda: self._dispatcher.send_tier_change(
                outcome.account,
                PlanTier.PREMIUM.value,
                PlanTier.FREE.value,
                ChangeReason.EXPIRATION.value,
            ),
        )
        self._audit.log(
            AuditEntry(
                action=action,
                account_id=account.id,
                epoch=account.plan_expires_at,
                history_id=outcome.history_id,
                details={
                    "previousPlan": outcome.previous_plan.value,
                    "newPlan": PlanTier.FREE.value,
                    "reason": ChangeReason.EXPIRATION.value,
                    "expiredAt": outcome.previous_expires_at,
                    "gracePeriodEnd": classification.grace_period_end,
                    "historyId": str(outcome.history_id),
                    "quotasReset": outcome.quotas_reset,
                    **notification,
                },
            )
        )
        tier_metrics.record_action(action, "fired")
        logger.info("tier.account.downgraded", extra={"account_id": str(account.id)})
        return _DOWNGRADED

    def _notify(
        self,
        account: AccountSnapshot,
        action: str,
        send: Callable[[], NotificationResult],
    ) -> Dict[str, Any]:
        """Best-effort delivery; the outcome is returned for the audit details."""
        try:
            result = send()
            if not result.ok:
                raise NotificationDispatchError(result.error or f"notification {result.status}")
        except Exception as exc:
            logger.warning("Notification for action=%s account=%s failed: %s", action, account.id, exc)
            tier_metrics.record_action(action, "notification_failed")
            return {"notification": "failed", "notificationError": str(exc)}
        return {"notification": "delivered"}

    def _repair_downgrade_audits(self, now: datetime, summary: SweepSummary) -> None:
        """Write the ``tier_downgraded`` entry for committed downgrades whose audit write was lost.

        Only history rows older than ``audit_repair_delay`` are considered, so a
        downgrade still between its commit and its audit write is left alone.
        """
        action = AuditAction.DOWNGRADED.value
        try:
            pending = self._audit.unaudited_expirations(
                since=now - self._config.audit_repair_window,
                until=now - self._config.audit_repair_delay,
                limit=self._config.sweep_batch_size,
            )
        except SQLAlchemyError as exc:
            logger.exception("Could not look up downgrades missing an audit entry.")
            tier_metrics.record_account_error("audit")
            summary.errors.append(AccountError(account_id=None, stage="audit", message=str(exc)))
            return

        for record in pending:
            try:
                self._audit.log(
                    AuditEntry(
                        action=action,
                        account_id=record.account_id,
                        history_id=record.id,
                        details={
                            "previousPlan": record.previous_plan.value if record.previous_plan else None,
                            "newPlan": record.new_plan.value,
                            "reason": record.change_reason.value,
                            "effectiveDate": record.effective_date,
                            "historyId": str(record.id),
                            "recovered": True,
                        },
                    )
                )
            except AuditWriteError as exc:
                tier_metrics.record_account_error("audit")
                summary.errors.append(AccountError(account_id=record.account_id, stage="audit", message=str(exc)))
                continue
            summary.audits_recovered += 1
            tier_metrics.record_action(action, "recovered")
            logger.info("tier.downgrade.audit_recovered", extra={"account_id": str(record.account_id)})

    def _record_failure(self, account: AccountSnapshot, action: str, exc: Exception) -> None:
        """Failed attempts are audited with ``success=False``; they never count for dedup."""
        try:
            self._audit.log(
                AuditEntry(
                    action=action,
                    account_id=account.id,
                    success=False,
                    epoch=account.plan_expires_at,
                    details={"error": str(exc)},
                )
            )
        except AuditWriteError:
            logger.warning("Could not record failure audit for account=%s action=%s", account.id, action)


def build_default_runner(
    *,
    config: Optional[TierEngineConfig] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    session_factory: Optional[Callable[[], Any]] = None,
) -> SchedulerRunner:
    """Wire a runner against the application database and environment settings."""
    from services.notification_service import build_notification_dispatcher
    from services.tier_catalog import TierCatalog
    from services.tier_history_store import TierHistoryStore
    from services.usage_quota_service import UsageQuotaTracker

    if session_factory is None:
        from database import SessionLocal

        session_factory = SessionLocal
    resolved_config = config or TierEngineConfig.from_env()
    resolved_dispatcher = dispatcher or build_notification_dispatcher()
    catalog = TierCatalog(session_factory=session_factory)
    audit_recorder = AuditRecorder(session_factory=session_factory)
    quota_tracker = UsageQuotaTracker(
        session_factory=session_factory,
        catalog=catalog,
        config=resolved_config,
        dispatcher=resolved_dispatcher,
        audit_recorder=audit_recorder,
    )
    repository = AccountRepository(
        session_factory=session_factory,
        history_store=TierHistoryStore(),
        quota_tracker=quota_tracker,
    )
    return SchedulerRunner(
        repository=repository,
        deduper=ActionDeduper(audit_recorder),
        audit_recorder=audit_recorder,
        dispatcher=resolved_dispatcher,
        config=resolved_config,
    )


__all__ = ["AccountError", "SchedulerRunner", "SweepSummary", "build_default_runner"]
