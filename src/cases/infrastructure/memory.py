"""
In-memory implementations of the case store and user directory.

Suitable for local development and testing. All data is stored in memory
and lost when the process terminates. Entities are deep-copied on the way
in and out so callers never share state with the store. Methods do not
await between reading and writing, so each call is atomic on the event
loop.
"""

from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from cases.application import (
    ICaseRepository, IUserDirectory, USER_COUNTER_FIELDS, CASE_PATCH_FIELDS
)
from cases.domain import Case, TimelineEvent, User, CaseQuery, UserQuery
from core import NotFoundError, RepositoryException, CaseIdConflict

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def _read_path(entity: Any, path: str) -> Any:
    value = entity
    for part in path.split("."):
        value = getattr(value, part)
    return value


def _write_path(entity: Any, path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    target = entity
    for part in parents:
        target = getattr(target, part)
    setattr(target, leaf, value)


class InMemoryCaseRepository(ICaseRepository):
    """
    In-memory implementation of ICaseRepository.

    Stores cases in a dictionary keyed by store id.
    """

    def __init__(self):
        self._cases: Dict[str, Case] = {}  # id -> case

    async def get(self, case_id: str) -> Optional[Case]:
        case = self._cases.get(case_id)
        return deepcopy(case) if case else None

    async def get_by_case_id(self, case_id: str) -> Optional[Case]:
        for case in self._cases.values():
            if case.case_id == case_id:
                return deepcopy(case)
        return None

    async def find(self, query: CaseQuery) -> List[Case]:
        matches = sorted(
            (case for case in self._cases.values() if query.matches(case)),
            key=lambda case: (case.sla.due_date or _FAR_FUTURE, case.case_id),
        )
        end = query.offset + query.limit if query.limit is not None else None
        return [deepcopy(case) for case in matches[query.offset:end]]

    async def count(self, query: CaseQuery) -> int:
        return sum(1 for case in self._cases.values() if query.matches(case))

    async def insert(self, case: Case) -> Case:
        if any(existing.case_id == case.case_id for existing in self._cases.values()):
            raise CaseIdConflict(case.case_id)

        stored = deepcopy(case)
        stored.id = str(uuid4())
        self._cases[stored.id] = stored
        return deepcopy(stored)

    async def update(
        self,
        case_id: str,
        patch: Dict[str, Any],
        events: Sequence[TimelineEvent] = (),
        guard: Optional[Dict[str, Any]] = None
    ) -> Optional[Case]:
        for key in list(patch) + list(guard or {}):
            if key not in CASE_PATCH_FIELDS:
                raise RepositoryException(f"Unknown case field: {key}")

        case = self._cases.get(case_id)
        if case is None:
            raise NotFoundError("Case", case_id)

        for key, expected in (guard or {}).items():
            if _read_path(case, key) != expected:
                return None

        for key, value in patch.items():
            _write_path(case, key, deepcopy(value))
        case.timeline.extend(deepcopy(list(events)))
        return deepcopy(case)

    async def append_event(self, case_id: str, event: TimelineEvent) -> Case:
        return await self.update(case_id, {"updated_at": event.timestamp}, [event])

    async def delete(self, case_id: str) -> bool:
        return self._cases.pop(case_id, None) is not None


class InMemoryUserDirectory(IUserDirectory):
    """
    In-memory implementation of IUserDirectory.

    Stores users in a dictionary keyed by id.
    """

    def __init__(self):
        self._users: Dict[str, User] = {}  # id -> user

    async def get(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return deepcopy(user) if user else None

    async def find(self, query: UserQuery) -> List[User]:
        matches = sorted(
            (user for user in self._users.values() if query.matches(user)),
            key=lambda user: user.id,
        )
        end = query.offset + query.limit if query.limit is not None else None
        return [deepcopy(user) for user in matches[query.offset:end]]

    async def count(self, query: UserQuery) -> int:
        return sum(1 for user in self._users.values() if query.matches(user))

    async def insert(self, user: User) -> User:
        stored = deepcopy(user)
        stored.id = stored.id or str(uuid4())
        if stored.id in self._users:
            raise RepositoryException(f"User '{stored.id}' already exists", {"user_id": stored.id})
        self._users[stored.id] = stored
        return deepcopy(stored)

    async def atomic_increment(
        self,
        user_id: str,
        field: str,
        delta: int,
        floor: Optional[int] = None
    ) -> None:
        self._check_counter(field)
        user = self._require(user_id)
        value = _read_path(user, field) + delta
        if floor is not None:
            value = max(floor, value)
        _write_path(user, field, value)

    async def overwrite(self, user_id: str, fields: Dict[str, int]) -> None:
        for field in fields:
            self._check_counter(field)
        user = self._require(user_id)
        for field, value in fields.items():
            _write_path(user, field, value)

    async def record_resolution(self, user_id: str, minutes: int, at: datetime) -> Optional[User]:
        user = self._users.get(user_id)
        if user is None:
            return None
        user.performance.record_resolution(minutes, at)
        return deepcopy(user)

    def _require(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def _check_counter(self, field: str) -> None:
        if field not in USER_COUNTER_FIELDS:
            raise RepositoryException(f"Unknown user counter: {field}")
