import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, String, Uuid

from database import Base


class ActionAuditEntry(Base):
    """Audit trail of tier actions; also the durable dedup signal for the scheduler."""

    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_account_action_created", "account_id", "action", "created_at"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    resource = Column(String(64), nullable=False)
    epoch = Column(DateTime(timezone=True), nullable=True)
    history_id = Column(
        Uuid(as_uuid=True), ForeignKey("user_tier_history.id", ondelete="SET NULL"), nullable=True, index=True
    )
    details = Column(JSON, nullable=False, default=dict)
    success = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
