import uuid

from sqlalchemy import Boolean, Column, DateTime, Enum, String, Uuid, func

from database import Base


class Account(Base):
    """Tenant account whose subscription plan the tier engine manages."""

    __tablename__ = "accounts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True, index=True)
    full_name = Column(String(255), nullable=True)
    plan = Column(
        Enum("free", "premium", name="subscription_plan", native_enum=False, create_constraint=True),
        nullable=False,
        default="free",
        index=True,
    )
    plan_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
