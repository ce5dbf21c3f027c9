"""
Case Domain Entities
====================

Pure Python domain entities for case lifecycle and SLA tracking.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config import (
    CaseStatus, Priority, UserRole,
    ACTIVE_STATUSES
)
from cases.domain.value_objects import online_mean


@dataclass(frozen=True)
class TimelineEvent:
    """
    One entry of a case's audit trail.

    Events are never mutated once appended. ``metadata`` is an open bag of
    primitive values (str, int, float, bool, None).
    """

    action: str
    description: str
    timestamp: datetime
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for logs and notifications."""
        return {
            "action": self.action,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "metadata": dict(self.metadata),
        }


@dataclass
class CaseSLA:
    """SLA tracking block of a case."""

    due_date: Optional[datetime] = None
    is_overdue: bool = False
    escalated: bool = False
    escalated_to: Optional[str] = None
    escalated_at: Optional[datetime] = None


@dataclass
class Resolution:
    """Stamped the first time a case enters Resolved or Closed."""

    resolved_at: datetime
    resolved_by: Optional[str] = None
    summary: Optional[str] = None


@dataclass
class Case:
    """
    Case entity representing a tracked security incident.

    ``id`` is assigned by the store; ``case_id`` is the human-readable
    identifier assigned once at creation.
    """

    # Core attributes
    id: Optional[str]
    case_id: str
    title: str
    description: str
    priority: str = Priority.P3
    status: str = CaseStatus.OPEN
    severity: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    # Timestamps
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Assignment
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None

    sla: CaseSLA = field(default_factory=CaseSLA)
    timeline: List[TimelineEvent] = field(default_factory=list)
    resolution: Optional[Resolution] = None

    @property
    def is_active(self) -> bool:
        """Open or In Progress cases are the only ones sweeps consider."""
        return self.status in ACTIVE_STATUSES

    @property
    def last_event_at(self) -> Optional[datetime]:
        """Timestamp of the most recent timeline event."""
        if not self.timeline:
            return None
        return self.timeline[-1].timestamp

    @property
    def age_days(self) -> int:
        """Get case age in whole days."""
        return (datetime.now(timezone.utc) - self.created_at).days

    @property
    def time_to_resolution_minutes(self) -> Optional[int]:
        """Minutes from creation to first resolution, if resolved."""
        if self.resolution is None:
            return None
        return resolution_minutes(self.created_at, self.resolution.resolved_at)

    def next_event_timestamp(self, now: datetime) -> datetime:
        """
        Timestamp for the next appended event.

        Keeps timeline timestamps non-decreasing even if the clock steps back.
        """
        last = self.last_event_at
        if last is not None and last > now:
            return last
        return now


def resolution_minutes(created_at: datetime, resolved_at: datetime) -> int:
    """Whole minutes between creation and resolution (never negative)."""
    seconds = (resolved_at - created_at).total_seconds()
    return max(0, int(seconds // 60))


@dataclass
class MonthlyStat:
    """Per-month performance bucket. ``month`` is 1-12."""

    month: int
    year: int
    cases_resolved: int = 0
    avg_resolution_time: float = 0.0
    overdue_cases: int = 0

    def record_resolution(self, minutes: float) -> None:
        self.avg_resolution_time, self.cases_resolved = online_mean(
            self.avg_resolution_time, self.cases_resolved, minutes
        )


@dataclass
class Performance:
    """Workload counters and resolution statistics of a user."""

    current_case_load: int = 0
    total_cases_assigned: int = 0
    total_cases_resolved: int = 0
    avg_resolution_time: float = 0.0
    overdue_cases: int = 0
    monthly_stats: List[MonthlyStat] = field(default_factory=list)

    def month_bucket(self, month: int, year: int) -> MonthlyStat:
        """Get the bucket for a month, creating it if absent."""
        for stat in self.monthly_stats:
            if stat.month == month and stat.year == year:
                return stat
        stat = MonthlyStat(month=month, year=year)
        self.monthly_stats.append(stat)
        return stat

    def record_resolution(self, minutes: float, at: datetime) -> None:
        """
        Apply a first resolution to the running statistics.

        Updates the running average and count, releases one unit of case
        load (never below zero) and applies the same recurrence to the
        bucket of ``at``'s month.
        """
        self.avg_resolution_time, self.total_cases_resolved = online_mean(
            self.avg_resolution_time, self.total_cases_resolved, minutes
        )
        self.current_case_load = max(0, self.current_case_load - 1)
        self.month_bucket(at.month, at.year).record_resolution(minutes)


@dataclass
class NotificationPreferences:
    """Which notifications a user has opted into."""

    new_assignment: bool = True
    case_update: bool = True
    escalation: bool = True
    daily_digest: bool = False


@dataclass
class User:
    """User entity: an analyst, senior analyst, admin or viewer."""

    id: Optional[str]
    username: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str = UserRole.ANALYST
    is_active: bool = True
    supervisor: Optional[str] = None
    performance: Performance = field(default_factory=Performance)
    preferences: NotificationPreferences = field(default_factory=NotificationPreferences)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def full_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.username

    @property
    def workload_status(self) -> str:
        """Human-readable bucket of the current case load."""
        load = self.performance.current_case_load
        if load == 0:
            return "Available"
        if load <= 5:
            return "Light"
        if load <= 10:
            return "Moderate"
        if load <= 15:
            return "Heavy"
        return "Overloaded"
