"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Uniqueness that the engine relies on (one conversation state per
    workflow+phone, one first-message flag per phone+day) is enforced by
    unique constraints, not by read-then-write checks.
  - String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Workflows
# ──────────────────────────────────────────────────────────────

class WorkflowRow(Base):
    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    webhook_token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    entry_node_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    definition: Mapped[Any] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class ConversationStateRow(Base):
    __tablename__ = "conversation_states"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    phone: Mapped[str] = mapped_column(String(64), nullable=False)
    current_node_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    context: Mapped[Any] = mapped_column(JSON, default=dict)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_message_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("workflow_id", "phone", name="uq_conversation_states_workflow_phone"),
    )


class FirstMessageFlagRow(Base):
    __tablename__ = "first_message_flags"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    phone: Mapped[str] = mapped_column(String(64), nullable=False)
    date_local: Mapped[str] = mapped_column(String(10), nullable=False)     # YYYY-MM-DD
    first_message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("phone", "date_local", name="uq_first_message_flags_phone_date"),
    )


class SentMessageRow(Base):
    __tablename__ = "sent_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    phone: Mapped[str] = mapped_column(String(64), nullable=False)
    message_kind: Mapped[str] = mapped_column(String(64), default="")
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class WorkflowExecutionRow(Base):
    __tablename__ = "workflow_executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    phone: Mapped[str] = mapped_column(String(64), default="")
    message_kind: Mapped[str] = mapped_column(String(32), default="other")
    trigger: Mapped[Any] = mapped_column(JSON, default=dict)
    responses: Mapped[Any] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(16), default="SUCCESS")
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_workflow_executions_workflow_created", "workflow_id", "created_at"),
    )


class SettingRow(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class ChannelRow(Base):
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(512), default="")
    status: Mapped[str] = mapped_column(String(32), default="ACTIVE")
    auth_status: Mapped[str] = mapped_column(String(32), default="AUTHORIZED")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class CapturedDataRow(Base):
    __tablename__ = "captured_data"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    workflow_name: Mapped[str] = mapped_column(String(256), default="")
    sequence_name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[str] = mapped_column(String(64), nullable=False)
    clicks: Mapped[Any] = mapped_column(JSON, default=list)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Booking
# ──────────────────────────────────────────────────────────────

class DepartmentRow(Base):
    __tablename__ = "booking_departments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class StaffRow(Base):
    __tablename__ = "booking_staff"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    department_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[str] = mapped_column(String(64), default="")
    email: Mapped[str] = mapped_column(String(256), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class WeeklySlotRow(Base):
    __tablename__ = "booking_slots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    staff_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    slot_duration: Mapped[int] = mapped_column(Integer, default=30)
    capacity: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class BookingRow(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    workflow_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    department_id: Mapped[str] = mapped_column(String(64), nullable=False)
    staff_id: Mapped[str] = mapped_column(String(64), nullable=False)
    slot_date: Mapped[str] = mapped_column(String(10), nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(256), default="")
    status: Mapped[str] = mapped_column(String(16), default="confirmed")
    booking_label: Mapped[str] = mapped_column(String(256), default="")
    custom_answers: Mapped[Any] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_bookings_staff_slot", "staff_id", "slot_date", "start_time"),
        Index("ix_bookings_customer", "account_id", "customer_phone"),
    )
