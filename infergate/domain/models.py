from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    # Null means the key is not bound to a tenant and callers may name one.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Store only a prefix + hash so raw keys are never persisted.
    key_prefix: Mapped[str] = mapped_column(String)
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class UsageEvent(Base):
    __tablename__ = "usage_events"
    __table_args__ = (
        CheckConstraint("total_tokens > 0", name="ck_usage_events_total_tokens_positive"),
        CheckConstraint("cost_estimate >= 0", name="ck_usage_events_cost_non_negative"),
        # Range scans for the rolling-window limiter and the monthly quota.
        Index("ix_usage_events_user_created", "user_id", "created_at"),
        Index("ix_usage_events_tenant_created", "tenant_id", "created_at"),
    )

    # Append-only record of one completed upstream call; rows are never updated.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    user_id: Mapped[str] = mapped_column(String)
    conversation_id: Mapped[str | None] = mapped_column(String, nullable=True)
    model: Mapped[str] = mapped_column(String)
    prompt_tokens: Mapped[int] = mapped_column(Integer)
    completion_tokens: Mapped[int] = mapped_column(Integer)
    total_tokens: Mapped[int] = mapped_column(Integer)
    cost_estimate: Mapped[Decimal] = mapped_column(Numeric(12, 6))
    # "provider" for reported counts, "estimated" for client-side approximations.
    usage_source: Mapped[str] = mapped_column(String, default="provider")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
