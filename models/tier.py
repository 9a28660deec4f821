from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)

from database import Base

_PLAN_ENUM_ARGS = ("free", "premium")


class TierFeatureDefinition(Base):
    """Per-tier feature limit reference data."""

    __tablename__ = "tier_feature_definitions"
    __table_args__ = (UniqueConstraint("tier", "feature_name", name="uq_tier_feature_definitions_tier_feature"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tier = Column(Enum(*_PLAN_ENUM_ARGS, name="tier_feature_plan", native_enum=False), nullable=False, index=True)
    feature_name = Column(String(100), nullable=False, index=True)
    feature_limit = Column(Integer, nullable=True)
    feature_enabled = Column(Boolean, nullable=False, default=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class UserFeatureUsage(Base):
    """Usage counter for one account/feature pair."""

    __tablename__ = "user_tier_features"
    __table_args__ = (UniqueConstraint("account_id", "feature_name", name="uq_user_tier_features_account_feature"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    feature_name = Column(String(100), nullable=False, index=True)
    current_usage = Column(Integer, nullable=False, default=0)
    usage_limit = Column(Integer, nullable=True)
    last_reset_at = Column(DateTime(timezone=True), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}


class TierHistoryEntry(Base):
    """Append-only ledger row for one plan transition."""

    __tablename__ = "user_tier_history"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    previous_plan = Column(Enum(*_PLAN_ENUM_ARGS, name="tier_history_previous_plan", native_enum=False), nullable=True)
    new_plan = Column(Enum(*_PLAN_ENUM_ARGS, name="tier_history_new_plan", native_enum=False), nullable=False)
    change_reason = Column(
        Enum("upgrade", "downgrade", "expiration", "manual", name="tier_change_reason", native_enum=False),
        nullable=False,
        index=True,
    )
    changed_by = Column(Uuid(as_uuid=True), nullable=True)
    effective_date = Column(DateTime(timezone=True), nullable=False, index=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
