"""
Case Value Objects
==================

Immutable value objects and stateless calculations for the case domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import (
    Priority, VALID_ROLES, ESCALATION_ROLES
)


DEFAULT_DEADLINE_HOURS: Dict[str, float] = {
    Priority.P1: 1,     # 1 hour for critical
    Priority.P2: 4,     # 4 hours for high
    Priority.P3: 24,    # 24 hours for medium
}
FALLBACK_DEADLINE_HOURS = 24


def online_mean(current_avg: float, count: int, value: float) -> Tuple[float, int]:
    """
    Fold one observation into a running mean.

    Returns:
        Tuple of (new_average, new_count)
    """
    n = count + 1
    return (current_avg * (n - 1) + value) / n, n


def format_case_id(created_at: datetime, sequence: int, suffix: int) -> str:
    """Build a ``CASE-<YYYY-MM-DD>-<NNN>-<RRR>`` identifier."""
    return f"CASE-{created_at:%Y-%m-%d}-{sequence:03d}-{suffix:03d}"


def case_id_prefix(created_at: datetime) -> str:
    """Prefix shared by all case ids created on the same day."""
    return f"CASE-{created_at:%Y-%m-%d}-"


class SLAConfig(BaseModel):
    """
    SLA Configuration loaded from YAML.

    This is a value object - immutable and defined by its attributes.
    """
    model_config = ConfigDict(frozen=True)

    deadline_hours: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_DEADLINE_HOURS),
        description="Response deadline in hours by priority"
    )
    default_hours: float = Field(
        default=FALLBACK_DEADLINE_HOURS,
        gt=0,
        description="Deadline for unknown or missing priorities"
    )
    escalation_roles: List[str] = Field(
        default_factory=lambda: list(ESCALATION_ROLES),
        description="Roles eligible as fallback escalation targets"
    )

    @field_validator("deadline_hours")
    @classmethod
    def validate_deadline_hours(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Fill in missing priorities and reject non-positive deadlines."""
        merged = dict(DEFAULT_DEADLINE_HOURS)
        merged.update(v or {})
        for priority, hours in merged.items():
            if hours <= 0:
                raise ValueError(f"deadline for {priority} must be positive, got {hours}")
        return merged

    @field_validator("escalation_roles")
    @classmethod
    def validate_escalation_roles(cls, v: List[str]) -> List[str]:
        unknown = [role for role in v if role not in VALID_ROLES]
        if unknown:
            raise ValueError(f"unknown escalation roles: {unknown}")
        return v


class SLAPolicy:
    """
    Pure functions for SLA deadline calculations.

    Stateless utility class - all deadline logic in one place.
    """

    @staticmethod
    def deadline_hours(priority: Optional[str], config: Optional[SLAConfig] = None) -> float:
        """
        Response deadline for a priority.

        Unknown or missing priorities fall back to ``config.default_hours``.
        """
        config = config or SLAConfig()
        if priority is None:
            return config.default_hours
        return config.deadline_hours.get(priority, config.default_hours)

    @staticmethod
    def compute_due_date(
        start: datetime,
        priority: Optional[str],
        config: Optional[SLAConfig] = None
    ) -> datetime:
        """
        Calculate the SLA due date.

        Args:
            start: Creation time, or the time of a priority change
            priority: Case priority
            config: SLA configuration (defaults when omitted)

        Returns:
            The SLA due date
        """
        return start + timedelta(hours=SLAPolicy.deadline_hours(priority, config))

    @staticmethod
    def escalation_cutoff(now: datetime, grace_minutes: int) -> datetime:
        """Cases due before this instant are overdue by more than the grace period."""
        return now - timedelta(minutes=grace_minutes)


class CaseQuery(BaseModel):
    """
    Selection predicate understood by every case store.

    Unset fields do not constrain the selection.
    """
    model_config = ConfigDict(frozen=True)

    statuses: Optional[List[str]] = None
    assigned_to: Optional[str] = None
    due_before: Optional[datetime] = Field(None, description="sla.due_date < due_before")
    due_after: Optional[datetime] = Field(None, description="sla.due_date >= due_after")
    is_overdue: Optional[bool] = None
    escalated: Optional[bool] = None
    case_id_prefix: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)

    def matches(self, case: Any) -> bool:
        """Evaluate the predicate against a case entity."""
        if self.statuses is not None and case.status not in self.statuses:
            return False
        if self.assigned_to is not None and case.assigned_to != self.assigned_to:
            return False
        due_date = case.sla.due_date
        if self.due_before is not None and (due_date is None or not due_date < self.due_before):
            return False
        if self.due_after is not None and (due_date is None or due_date < self.due_after):
            return False
        if self.is_overdue is not None and case.sla.is_overdue != self.is_overdue:
            return False
        if self.escalated is not None and case.sla.escalated != self.escalated:
            return False
        if self.case_id_prefix is not None and not case.case_id.startswith(self.case_id_prefix):
            return False
        return True


class UserQuery(BaseModel):
    """Selection predicate understood by every user directory."""
    model_config = ConfigDict(frozen=True)

    ids: Optional[List[str]] = None
    roles: Optional[List[str]] = None
    is_active: Optional[bool] = None
    daily_digest: Optional[bool] = None
    limit: Optional[int] = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)

    def matches(self, user: Any) -> bool:
        """Evaluate the predicate against a user entity."""
        if self.ids is not None and user.id not in self.ids:
            return False
        if self.roles is not None and user.role not in self.roles:
            return False
        if self.is_active is not None and user.is_active != self.is_active:
            return False
        if self.daily_digest is not None and user.preferences.daily_digest != self.daily_digest:
            return False
        return True


@dataclass(frozen=True)
class DigestStats:
    """Snapshot counts sent in a user's daily digest."""
    open_cases: int = 0
    in_progress_cases: int = 0
    overdue_cases: int = 0

    @property
    def has_activity(self) -> bool:
        return bool(self.open_cases or self.in_progress_cases or self.overdue_cases)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class HealthSnapshot:
    """Aggregate counts collected by the liveness sweep."""
    timestamp: datetime
    database: bool
    total_cases: int = 0
    active_cases: int = 0
    overdue_cases: int = 0
    active_users: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data
