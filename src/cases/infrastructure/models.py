"""
Case Infrastructure Models
==========================

SQLAlchemy ORM models for the case module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text,
    UniqueConstraint, Uuid
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from infrastructure.database import Base
from config import CaseStatus, Priority, UserRole


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CaseModel(Base):
    """
    Database model for Case entity.

    Maps to the 'cases' table. The SLA block and resolution are flattened
    into columns so guarded updates can target them directly.
    """
    __tablename__ = "cases"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Business identifier
    case_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)

    # Case content
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default=Priority.P3)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=CaseStatus.OPEN, index=True)
    severity: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    # Assignment
    assigned_to: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    assigned_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # SLA tracking
    sla_due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    sla_is_overdue: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sla_escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sla_escalated_to: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sla_escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Resolution (set once)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolution_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    timeline: Mapped[List["TimelineEventModel"]] = relationship(
        back_populates="case",
        order_by="TimelineEventModel.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class TimelineEventModel(Base):
    """
    Database model for one timeline entry.

    Maps to the 'case_timeline_events' table. Rows are only ever inserted;
    insertion order is the timeline order.
    """
    __tablename__ = "case_timeline_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_pk: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    case: Mapped[CaseModel] = relationship(back_populates="timeline")


class UserModel(Base):
    """
    Database model for User entity.

    Maps to the 'users' table. Performance counters and notification
    preferences are flattened into columns.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(50), nullable=False, default=UserRole.ANALYST, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    supervisor: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    # Performance
    current_case_load: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cases_assigned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cases_resolved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_resolution_time: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    overdue_cases: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Notification preferences
    notify_new_assignment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_case_update: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_escalation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_daily_digest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    monthly_stats: Mapped[List["MonthlyStatModel"]] = relationship(
        back_populates="user",
        order_by="MonthlyStatModel.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class MonthlyStatModel(Base):
    """
    Per-month resolution statistics of a user.

    Maps to the 'user_monthly_stats' table. ``month`` is 1-12.
    """
    __tablename__ = "user_monthly_stats"
    __table_args__ = (
        UniqueConstraint("user_id", "month", "year", name="uq_user_monthly_stats_period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    cases_resolved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_resolution_time: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    overdue_cases: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    user: Mapped[UserModel] = relationship(back_populates="monthly_stats")
