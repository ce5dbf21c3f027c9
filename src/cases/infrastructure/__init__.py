"""
Case Infrastructure Layer
=========================

Infrastructure implementations for the case module:
- Models: SQLAlchemy ORM models
- Repositories: SQL and in-memory data access
- External: External service integrations (Slack, config watcher, scheduler)
"""

from cases.infrastructure.models import (
    CaseModel,
    TimelineEventModel,
    UserModel,
    MonthlyStatModel,
)
from cases.infrastructure.repositories import (
    SQLAlchemyCaseRepository,
    SQLAlchemyUserDirectory,
)
from cases.infrastructure.memory import (
    InMemoryCaseRepository,
    InMemoryUserDirectory,
)
from cases.infrastructure.external import (
    SLAConfigManager,
    CircuitBreaker,
    SlackNotifier,
    CaseScheduler,
)

__all__ = [
    "CaseModel",
    "TimelineEventModel",
    "UserModel",
    "MonthlyStatModel",
    "SQLAlchemyCaseRepository",
    "SQLAlchemyUserDirectory",
    "InMemoryCaseRepository",
    "InMemoryUserDirectory",
    "SLAConfigManager",
    "CircuitBreaker",
    "SlackNotifier",
    "CaseScheduler",
]
