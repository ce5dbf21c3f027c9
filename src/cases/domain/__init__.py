"""
Case Domain Layer
=================

Domain layer for the case lifecycle module.

Contains:
- Entities: Case, User and their nested records (SLA block, timeline, performance)
- Value Objects: SLAConfig, query predicates, digest and health snapshots
- Domain Services: Stateless rules (SLAPolicy, select_escalation_target)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from cases.domain.entities import (
    Case,
    CaseSLA,
    Resolution,
    TimelineEvent,
    User,
    Performance,
    MonthlyStat,
    NotificationPreferences,
    resolution_minutes,
)
from cases.domain.value_objects import (
    SLAConfig,
    SLAPolicy,
    CaseQuery,
    UserQuery,
    DigestStats,
    HealthSnapshot,
    online_mean,
    format_case_id,
    case_id_prefix,
)
from cases.domain.escalation import select_escalation_target

__all__ = [
    # Entities
    "Case",
    "CaseSLA",
    "Resolution",
    "TimelineEvent",
    "User",
    "Performance",
    "MonthlyStat",
    "NotificationPreferences",
    "resolution_minutes",
    # Value Objects & Services
    "SLAConfig",
    "SLAPolicy",
    "CaseQuery",
    "UserQuery",
    "DigestStats",
    "HealthSnapshot",
    "online_mean",
    "format_case_id",
    "case_id_prefix",
    "select_escalation_target",
]
