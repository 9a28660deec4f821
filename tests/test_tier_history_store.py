from __future__ import annotations

from datetime import datetime, timedelta, timezone

from core.plan_constants import ChangeReason, PlanTier
from services.tier_history_store import TierHistoryStore

T = datetime(2025, 8, 8, 14, 15, tzinfo=timezone.utc)


def test_record_appends_entries_in_order(session_factory, make_account) -> None:
    account_id = make_account(plan="free")
    store = TierHistoryStore()
    session = session_factory()
    try:
        store.record(
            session,
            account_id=account_id,
            previous_plan=PlanTier.FREE,
            new_plan=PlanTier.PREMIUM,
            reason=ChangeReason.UPGRADE,
            effective_date=T,
        )
        store.record(
            session,
            account_id=account_id,
            previous_plan=PlanTier.PREMIUM,
            new_plan=PlanTier.FREE,
            reason=ChangeReason.EXPIRATION,
            effective_date=T + timedelta(days=40),
            notes="grace period elapsed",
        )
        session.commit()
        entries = store.list_for_account(session, account_id)
    finally:
        session.close()

    assert [entry.change_reason for entry in entries] == [ChangeReason.UPGRADE, ChangeReason.EXPIRATION]
    assert entries[1].previous_plan is PlanTier.PREMIUM
    assert entries[1].new_plan is PlanTier.FREE
    assert entries[1].notes == "grace period elapsed"


def test_effective_date_never_moves_backwards(session_factory, make_account) -> None:
    account_id = make_account(plan="free")
    store = TierHistoryStore()
    session = session_factory()
    try:
        store.record(
            session,
            account_id=account_id,
            previous_plan=PlanTier.FREE,
            new_plan=PlanTier.PREMIUM,
            reason=ChangeReason.MANUAL,
            effective_date=T,
        )
        store.record(
            session,
            account_id=account_id,
            previous_plan=PlanTier.PREMIUM,
            new_plan=PlanTier.FREE,
            reason=ChangeReason.DOWNGRADE,
            effective_date=T - timedelta(hours=3),
        )
        session.commit()
        entries = store.list_for_account(session, account_id)
    finally:
        session.close()

    assert [entry.effective_date for entry in entries] == [T, T]


def test_store_exposes_no_mutation_api() -> None:
    store = TierHistoryStore()
    assert not any(hasattr(store, name) for name in ("update", "delete", "remove"))
