"""
Pytest configuration and shared fixtures for the case SLA engine.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
from hypothesis import settings, HealthCheck, Verbosity

from config import UserRole
from core import NotificationError
from cases.application import (
    CaseLifecycleService, EscalationResolver, NotificationDispatcher,
    IClock, INotifier
)
from cases.domain import User, Performance, NotificationPreferences
from cases.infrastructure import InMemoryCaseRepository, InMemoryUserDirectory

# Configure Hypothesis settings for all property-based tests
settings.register_profile(
    "default",
    max_examples=50,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
    verbosity=Verbosity.normal,
)

settings.register_profile(
    "ci",
    max_examples=200,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
    verbosity=Verbosity.quiet,
)

settings.register_profile(
    "debug",
    max_examples=10,
    deadline=None,
    verbosity=Verbosity.verbose,
)

settings.load_profile("default")


T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class FrozenClock(IClock):
    """Clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None):
        self._now = now or T0

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> datetime:
        self._now += timedelta(**kwargs)
        return self._now


class RecordingNotifier(INotifier):
    """Notifier that keeps every delivery in memory."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    async def notify(self, recipient_user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise NotificationError("delivery refused")
        self.sent.append((recipient_user_id, kind, payload))

    def kinds_for(self, recipient_user_id: str) -> List[str]:
        return [kind for recipient, kind, _ in self.sent if recipient == recipient_user_id]


def make_user(
    user_id: str,
    role: str = UserRole.ANALYST,
    supervisor: Optional[str] = None,
    is_active: bool = True,
    load: int = 0,
    daily_digest: bool = False,
    **performance: Any
) -> User:
    """Build a user with sensible defaults."""
    return User(
        id=user_id,
        username=user_id,
        email=f"{user_id}@soc.example.com",
        first_name=user_id.capitalize(),
        last_name="Tester",
        role=role,
        is_active=is_active,
        supervisor=supervisor,
        performance=Performance(current_case_load=load, **performance),
        preferences=NotificationPreferences(daily_digest=daily_digest),
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def case_repository() -> InMemoryCaseRepository:
    """Provide a fresh in-memory case store for each test."""
    return InMemoryCaseRepository()


@pytest.fixture
def user_directory() -> InMemoryUserDirectory:
    """Provide a fresh in-memory user directory for each test."""
    return InMemoryUserDirectory()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier) -> NotificationDispatcher:
    return NotificationDispatcher(notifier, timeout_seconds=1.0)


@pytest.fixture
def lifecycle(case_repository, user_directory, clock, dispatcher) -> CaseLifecycleService:
    return CaseLifecycleService(case_repository, user_directory, clock=clock, dispatcher=dispatcher)


@pytest.fixture
def resolver(user_directory) -> EscalationResolver:
    return EscalationResolver(user_directory)


@pytest.fixture
async def team(user_directory) -> Dict[str, User]:
    """
    A small SOC team:
    - alice: analyst reporting to sam
    - bob: analyst reporting to nobody
    - sam: senior analyst
    - ada: admin
    - vic: viewer
    """
    users = [
        make_user("alice", supervisor="sam"),
        make_user("bob"),
        make_user("sam", role=UserRole.SENIOR_ANALYST),
        make_user("ada", role=UserRole.ADMIN),
        make_user("vic", role=UserRole.VIEWER),
    ]
    return {user.id: await user_directory.insert(user) for user in users}
