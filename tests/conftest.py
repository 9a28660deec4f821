import os
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Callable, Generator, List, Optional

import pytest

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.engine import Engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import models  # noqa: E402,F401
from core.tier_config import TierEngineConfig  # noqa: E402
from database import Base  # noqa: E402
from models.account import Account  # noqa: E402
from services.account_repository import AccountRepository  # noqa: E402
from services.action_deduper import ActionDeduper  # noqa: E402
from services.audit_log import AuditRecorder  # noqa: E402
from services.notification_service import NotificationResult  # noqa: E402
from services.plan_change_service import PlanChangeService  # noqa: E402
from services.tier_catalog import TierCatalog  # noqa: E402
from services.tier_history_store import TierHistoryStore  # noqa: E402
from services.tier_scheduler import SchedulerRunner  # noqa: E402
from services.usage_quota_service import UsageQuotaTracker  # noqa: E402

REFERENCE_TIME = datetime(2025, 8, 8, 14, 15, tzinfo=timezone.utc)


class RecordingDispatcher:
    """Dispatcher double that records every call and can be told to fail."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None
        self.status = "delivered"

    def _record(self, *call) -> NotificationResult:
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with
        return NotificationResult(status=self.status, error=None if self.status == "delivered" else "gateway down")

    def send_expiration_warning(self, account, days_left):
        return self._record("expiration_warning", account.id, days_left)

    def send_grace_period(self, account, grace_period_end):
        return self._record("grace_period", account.id, grace_period_end)

    def send_tier_change(self, account, previous_plan, new_plan, reason):
        return self._record("tier_change", account.id, previous_plan, new_plan, reason)

    def send_upgrade_prompt(self, account, feature):
        return self._record("upgrade_prompt", account.id, feature)

    def kinds(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    test_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Callable[[], Session]:
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture()
def make_account(session_factory: Callable[[], Session]) -> Callable[..., uuid.UUID]:
    def _make(
        *,
        plan: str = "premium",
        expires_at: Optional[datetime] = None,
        is_active: bool = True,
        email: Optional[str] = None,
        full_name: Optional[str] = "Test Owner",
    ) -> uuid.UUID:
        account_id = uuid.uuid4()
        session = session_factory()
        try:
            session.add(
                Account(
                    id=account_id,
                    email=email or f"{account_id.hex[:12]}@example.com",
                    full_name=full_name,
                    plan=plan,
                    plan_expires_at=expires_at,
                    is_active=is_active,
                )
            )
            session.commit()
        finally:
            session.close()
        return account_id

    return _make


@pytest.fixture()
def tier_config() -> TierEngineConfig:
    return TierEngineConfig()


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def tier_engine(session_factory, tier_config, dispatcher) -> SimpleNamespace:
    """All tier engine collaborators wired against the per-test SQLite database."""
    catalog = TierCatalog(session_factory=session_factory)
    audit = AuditRecorder(session_factory=session_factory)
    quota = UsageQuotaTracker(
        session_factory=session_factory,
        catalog=catalog,
        config=tier_config,
        dispatcher=dispatcher,
        audit_recorder=audit,
    )
    history = TierHistoryStore()
    repository = AccountRepository(session_factory=session_factory, history_store=history, quota_tracker=quota)
    deduper = ActionDeduper(audit)
    runner = SchedulerRunner(
        repository=repository,
        deduper=deduper,
        audit_recorder=audit,
        dispatcher=dispatcher,
        config=tier_config,
    )
    plans = PlanChangeService(repository=repository, audit_recorder=audit, dispatcher=dispatcher)
    return SimpleNamespace(
        catalog=catalog,
        quota=quota,
        history=history,
        repository=repository,
        audit=audit,
        deduper=deduper,
        runner=runner,
        plans=plans,
        dispatcher=dispatcher,
        session_factory=session_factory,
        config=tier_config,
    )
