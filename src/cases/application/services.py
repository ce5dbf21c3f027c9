"""
Case Application Services
=========================

Application services orchestrate the case lifecycle and coordinate between
domain entities, the case store and the user directory.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations
"""

import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from config import (
    TimelineAction, NotificationKind,
    VALID_STATUSES, VALID_PRIORITIES, VALID_TIMELINE_ACTIONS,
    CLOSED_OUT_STATUSES
)
from core import (
    NotFoundError, InvalidTransitionInput, InvalidAssignee,
    CaseIdConflict, RepositoryException
)
from cases.domain import (
    Case, CaseSLA, Resolution, TimelineEvent, User,
    SLAConfig, SLAPolicy, CaseQuery, UserQuery,
    case_id_prefix, format_case_id, resolution_minutes,
    select_escalation_target
)
from cases.application.dto import CaseCreateDTO
from cases.application.notifications import NotificationDispatcher, case_payload
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class UserCounter(str):
    """Performance counters that can be changed atomically."""
    CURRENT_CASE_LOAD = "performance.current_case_load"
    TOTAL_CASES_ASSIGNED = "performance.total_cases_assigned"
    TOTAL_CASES_RESOLVED = "performance.total_cases_resolved"
    OVERDUE_CASES = "performance.overdue_cases"


USER_COUNTER_FIELDS = [
    UserCounter.CURRENT_CASE_LOAD, UserCounter.TOTAL_CASES_ASSIGNED,
    UserCounter.TOTAL_CASES_RESOLVED, UserCounter.OVERDUE_CASES
]

# Keys accepted in update patches and guards
CASE_PATCH_FIELDS = [
    "status", "priority", "updated_at",
    "assigned_to", "assigned_by", "assigned_at",
    "sla.due_date", "sla.is_overdue", "sla.escalated",
    "sla.escalated_to", "sla.escalated_at",
    "resolution",
]

_PRIMITIVE_TYPES = (str, int, float, bool, type(None))


# ========== Repository Interfaces (Dependency Inversion) ==========

class ICaseRepository(ABC):
    """Interface for case data access."""

    @abstractmethod
    async def get(self, case_id: str) -> Optional[Case]:
        """Get case by store id."""

    @abstractmethod
    async def get_by_case_id(self, case_id: str) -> Optional[Case]:
        """Get case by its human-readable CASE-... identifier."""

    @abstractmethod
    async def find(self, query: CaseQuery) -> List[Case]:
        """List cases matching the query, earliest due date first."""

    @abstractmethod
    async def count(self, query: CaseQuery) -> int:
        """Count cases matching the query (limit/offset ignored)."""

    @abstractmethod
    async def insert(self, case: Case) -> Case:
        """
        Persist a new case and return it with its store id.

        Raises:
            CaseIdConflict: If ``case.case_id`` is already taken
        """

    @abstractmethod
    async def update(
        self,
        case_id: str,
        patch: Dict[str, Any],
        events: Sequence[TimelineEvent] = (),
        guard: Optional[Dict[str, Any]] = None
    ) -> Optional[Case]:
        """
        Apply a field patch and append events in one atomic write.

        Returns:
            The updated case, or None when ``guard`` did not match

        Raises:
            NotFoundError: If the case does not exist
        """

    @abstractmethod
    async def append_event(self, case_id: str, event: TimelineEvent) -> Case:
        """Append a single timeline event and touch ``updated_at``."""

    @abstractmethod
    async def delete(self, case_id: str) -> bool:
        """Delete a case. Returns False if it did not exist."""


class IUserDirectory(ABC):
    """Interface for user data access."""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[User]:
        """Get user by id."""

    @abstractmethod
    async def find(self, query: UserQuery) -> List[User]:
        """List users matching the query, ordered by id."""

    @abstractmethod
    async def count(self, query: UserQuery) -> int:
        """Count users matching the query."""

    @abstractmethod
    async def insert(self, user: User) -> User:
        """Persist a new user."""

    @abstractmethod
    async def atomic_increment(
        self,
        user_id: str,
        field: str,
        delta: int,
        floor: Optional[int] = None
    ) -> None:
        """
        Add ``delta`` to a performance counter in one atomic write.

        Raises:
            NotFoundError: If the user does not exist
        """

    @abstractmethod
    async def overwrite(self, user_id: str, fields: Dict[str, int]) -> None:
        """Set performance counters to absolute values."""

    @abstractmethod
    async def record_resolution(self, user_id: str, minutes: int, at: datetime) -> Optional[User]:
        """
        Fold a first resolution into the user's statistics atomically.

        Returns:
            The updated user, or None if the user does not exist
        """


class ISLAConfigProvider(ABC):
    """Interface for SLA configuration access."""

    @abstractmethod
    def get_config(self) -> SLAConfig:
        """Get current SLA configuration."""


class StaticConfigProvider(ISLAConfigProvider):
    """Config provider returning a fixed configuration."""

    def __init__(self, config: Optional[SLAConfig] = None):
        self._config = config or SLAConfig()

    def get_config(self) -> SLAConfig:
        return self._config


class IClock(ABC):
    """Interface for the current time."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware."""


class SystemClock(IClock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


# ========== Application Services ==========

class CaseLifecycleService:
    """
    Service for case state transitions.

    Every transition validates its input first, then writes the field
    changes and the matching timeline event together. Counter updates on
    users are separate atomic writes; drift is corrected by the
    workload reconciliation sweep.
    """

    def __init__(
        self,
        case_repository: ICaseRepository,
        user_directory: IUserDirectory,
        clock: Optional[IClock] = None,
        config_provider: Optional[ISLAConfigProvider] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        max_id_attempts: int = 5
    ):
        self._cases = case_repository
        self._users = user_directory
        self._clock = clock or SystemClock()
        self._config_provider = config_provider or StaticConfigProvider()
        self._dispatcher = dispatcher
        self._max_id_attempts = max_id_attempts

    async def get(self, case_id: str) -> Case:
        """
        Get a case by store id.

        Raises:
            NotFoundError: If the case does not exist
        """
        case = await self._cases.get(case_id)
        if case is None:
            raise NotFoundError("Case", case_id)
        return case

    async def create(
        self,
        case_input: Union[CaseCreateDTO, Dict[str, Any]],
        actor: Optional[str] = None
    ) -> Case:
        """
        Open a new case.

        Assigns the CASE-<date>-<seq>-<rand> identifier, computes the SLA
        due date from the priority and, when an assignee is given, charges
        the assignment to that user's counters.

        Raises:
            InvalidTransitionInput: If the input fails validation
            InvalidAssignee: If the initial assignee is missing or inactive
            CaseIdConflict: If no free identifier was found
        """
        data = self._validate_create(case_input)

        assignee = None
        if data.assigned_to:
            assignee = await self._require_active_user(data.assigned_to)

        now = self._clock.now()
        due_date = SLAPolicy.compute_due_date(now, data.priority, self._config_provider.get_config())

        timeline = [
            TimelineEvent(
                action=TimelineAction.CREATED,
                description="Case created",
                timestamp=now,
                user_id=actor,
                metadata={"priority": data.priority},
            )
        ]
        if assignee is not None:
            timeline.append(self._assigned_event(assignee, None, now, actor))

        case = Case(
            id=None,
            case_id="",
            title=data.title,
            description=data.description,
            priority=data.priority,
            severity=data.severity,
            category=data.category,
            tags=list(data.tags),
            created_at=now,
            updated_at=now,
            assigned_to=assignee.id if assignee else None,
            assigned_by=actor if assignee else None,
            assigned_at=now if assignee else None,
            sla=CaseSLA(due_date=due_date),
            timeline=timeline,
        )

        sequence = await self._cases.count(CaseQuery(case_id_prefix=case_id_prefix(now))) + 1
        for attempt in range(1, self._max_id_attempts + 1):
            case.case_id = format_case_id(now, sequence, secrets.randbelow(1000))
            try:
                created = await self._cases.insert(case)
            except CaseIdConflict:
                if attempt == self._max_id_attempts:
                    raise
                logger.warning(
                    "Case id collision, retrying",
                    extra={"case_id": case.case_id, "attempt": attempt}
                )
            else:
                break

        if assignee is not None:
            await self._charge_assignment(assignee.id)
            if assignee.preferences.new_assignment:
                self._notify(assignee.id, NotificationKind.ASSIGNMENT, {
                    "case": case_payload(created),
                    "assigned_by": actor,
                })

        logger.info(
            "Case created",
            extra={
                "case_id": created.case_id,
                "priority": created.priority,
                "due_date": due_date.isoformat(),
                "assigned_to": created.assigned_to,
            }
        )
        return created

    async def change_status(
        self,
        case_id: str,
        new_status: str,
        actor: Optional[str] = None,
        summary: Optional[str] = None
    ) -> Case:
        """
        Move a case to a new status.

        The first entry into Resolved or Closed stamps the resolution and
        updates the assignee's resolution statistics. Unchanged status is a
        no-op.
        """
        if new_status not in VALID_STATUSES:
            raise InvalidTransitionInput("status", new_status)

        case = await self.get(case_id)
        if case.status == new_status:
            return case

        now = self._clock.now()
        event = TimelineEvent(
            action=TimelineAction.STATUS_CHANGED,
            description=f"Status changed from {case.status} to {new_status}",
            timestamp=case.next_event_timestamp(now),
            user_id=actor,
            metadata={"previous_status": case.status, "new_status": new_status},
        )
        patch = {"status": new_status, "updated_at": now}

        if new_status in CLOSED_OUT_STATUSES and case.resolution is None:
            resolution = Resolution(resolved_at=now, resolved_by=actor, summary=summary)
            updated = await self._cases.update(
                case_id,
                {**patch, "resolution": resolution},
                [event],
                guard={"resolution": None},
            )
            if updated is not None:
                await self._record_resolution(updated, resolution)
                self._log_transition("Case status changed", updated, previous_status=case.status)
                return updated
            # Resolved concurrently: keep the first stamp
            logger.info("Case already resolved, keeping first resolution", extra={"case_id": case.case_id})

        updated = await self._cases.update(case_id, patch, [event])
        self._log_transition("Case status changed", updated, previous_status=case.status)
        return updated

    async def change_priority(
        self,
        case_id: str,
        new_priority: str,
        actor: Optional[str] = None
    ) -> Case:
        """
        Change priority and restart the SLA clock from now.

        ``sla.is_overdue`` is left as it is.
        """
        if new_priority not in VALID_PRIORITIES:
            raise InvalidTransitionInput("priority", new_priority)

        case = await self.get(case_id)
        if case.priority == new_priority:
            return case

        now = self._clock.now()
        due_date = SLAPolicy.compute_due_date(now, new_priority, self._config_provider.get_config())
        event = TimelineEvent(
            action=TimelineAction.PRIORITY_CHANGED,
            description=f"Priority changed from {case.priority} to {new_priority}",
            timestamp=case.next_event_timestamp(now),
            user_id=actor,
            metadata={
                "previous_priority": case.priority,
                "new_priority": new_priority,
                "due_date": due_date.isoformat(),
            },
        )
        updated = await self._cases.update(
            case_id,
            {"priority": new_priority, "sla.due_date": due_date, "updated_at": now},
            [event],
        )
        self._log_transition("Case priority changed", updated, previous_priority=case.priority)
        return updated

    async def assign(
        self,
        case_id: str,
        user_id: str,
        actor: Optional[str] = None
    ) -> Case:
        """
        Assign a case to a user.

        Moving a case between users releases one unit of load from the
        previous assignee and charges the new one. Re-assigning to the same
        user only records the event.
        """
        if not isinstance(user_id, str) or not user_id:
            raise InvalidTransitionInput("assigned_to", user_id)

        assignee = await self._require_active_user(user_id)
        case = await self.get(case_id)
        previous = case.assigned_to

        now = self._clock.now()
        event = self._assigned_event(assignee, previous, case.next_event_timestamp(now), actor)
        updated = await self._cases.update(
            case_id,
            {
                "assigned_to": assignee.id,
                "assigned_by": actor,
                "assigned_at": now,
                "updated_at": now,
            },
            [event],
        )

        if previous != assignee.id:
            if previous:
                await self._release_load(previous)
            await self._charge_assignment(assignee.id)

        if assignee.preferences.new_assignment:
            self._notify(assignee.id, NotificationKind.ASSIGNMENT, {
                "case": case_payload(updated),
                "assigned_by": actor,
            })

        self._log_transition("Case assigned", updated, previous_assignee=previous)
        return updated

    async def escalate(
        self,
        case_id: str,
        target_user_id: str,
        actor: Optional[str] = None
    ) -> Case:
        """
        Escalate a case by hand to a chosen user.

        Escalation happens at most once per case; a case that is already
        escalated is returned unchanged.
        """
        if not isinstance(target_user_id, str) or not target_user_id:
            raise InvalidTransitionInput("escalated_to", target_user_id)

        target = await self._require_active_user(target_user_id)
        case = await self.get(case_id)
        if case.sla.escalated:
            return case

        now = self._clock.now()
        event = TimelineEvent(
            action=TimelineAction.ESCALATED,
            description=f"Case escalated to {target.full_name} due to SLA breach",
            timestamp=case.next_event_timestamp(now),
            user_id=actor,
            metadata={"escalated_to": target.id, "escalated_by": actor},
        )
        updated = await self._cases.update(
            case_id,
            escalation_patch(target, now),
            [event],
            guard={"sla.escalated": False},
        )
        if updated is None:
            return await self.get(case_id)

        self._notify(target.id, NotificationKind.ESCALATION, {
            "case": case_payload(updated),
            "escalated_to_name": target.full_name,
            "reason": "MANUAL",
        })
        self._log_transition("Case escalated", updated, escalated_to=target.id)
        return updated

    async def add_comment(
        self,
        case_id: str,
        content: str,
        actor: Optional[str],
        is_internal: bool = False
    ) -> Case:
        """Append a comment to the case timeline."""
        if not isinstance(content, str) or not content.strip():
            raise InvalidTransitionInput("content", content)

        case = await self.get(case_id)
        event = TimelineEvent(
            action=TimelineAction.COMMENT_ADDED,
            description="Comment added",
            timestamp=case.next_event_timestamp(self._clock.now()),
            user_id=actor,
            metadata={"content": content, "is_internal": bool(is_internal)},
        )
        return await self._cases.append_event(case_id, event)

    async def append_timeline_event(
        self,
        case_id: str,
        action: str,
        description: str,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Case:
        """Append an arbitrary timeline event. No counters are touched."""
        if action not in VALID_TIMELINE_ACTIONS:
            raise InvalidTransitionInput("action", action)
        if not isinstance(description, str) or not description.strip():
            raise InvalidTransitionInput("description", description)
        metadata = dict(metadata or {})
        for key, value in metadata.items():
            if not isinstance(key, str) or not isinstance(value, _PRIMITIVE_TYPES):
                raise InvalidTransitionInput(f"metadata.{key}", value)

        case = await self.get(case_id)
        event = TimelineEvent(
            action=action,
            description=description,
            timestamp=case.next_event_timestamp(self._clock.now()),
            user_id=actor,
            metadata=metadata,
        )
        return await self._cases.append_event(case_id, event)

    async def delete(self, case_id: str, actor: Optional[str] = None) -> None:
        """
        Delete a case.

        An active case releases one unit of load from its assignee.
        """
        case = await self.get(case_id)
        if not await self._cases.delete(case_id):
            raise NotFoundError("Case", case_id)

        if case.is_active and case.assigned_to:
            await self._release_load(case.assigned_to)

        logger.info(
            "Case deleted",
            extra={"case_id": case.case_id, "deleted_by": actor, "was_active": case.is_active}
        )

    # ========== Helpers ==========

    def _validate_create(self, case_input: Union[CaseCreateDTO, Dict[str, Any]]) -> CaseCreateDTO:
        if isinstance(case_input, CaseCreateDTO):
            return case_input
        try:
            return CaseCreateDTO.model_validate(case_input)
        except ValidationError as e:
            errors = e.errors()
            first = errors[0]
            field = ".".join(str(part) for part in first.get("loc", ())) or "case"
            raise InvalidTransitionInput(
                field,
                first.get("input"),
                {"errors": [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in errors]}
            ) from e

    async def _require_active_user(self, user_id: str) -> User:
        user = await self._users.get(user_id)
        if user is None:
            raise InvalidAssignee(user_id, "user not found")
        if not user.is_active:
            raise InvalidAssignee(user_id, "user is inactive")
        return user

    def _assigned_event(
        self,
        assignee: User,
        previous: Optional[str],
        timestamp: datetime,
        actor: Optional[str]
    ) -> TimelineEvent:
        return TimelineEvent(
            action=TimelineAction.ASSIGNED,
            description=f"Case assigned to {assignee.full_name}",
            timestamp=timestamp,
            user_id=actor,
            metadata={"assigned_to": assignee.id, "previous_assignee": previous},
        )

    async def _charge_assignment(self, user_id: str) -> None:
        await self._users.atomic_increment(user_id, UserCounter.CURRENT_CASE_LOAD, 1)
        await self._users.atomic_increment(user_id, UserCounter.TOTAL_CASES_ASSIGNED, 1)

    async def _release_load(self, user_id: str) -> None:
        try:
            await self._users.atomic_increment(user_id, UserCounter.CURRENT_CASE_LOAD, -1, floor=0)
        except NotFoundError:
            logger.warning("Previous assignee no longer exists", extra={"user_id": user_id})

    async def _record_resolution(self, case: Case, resolution: Resolution) -> None:
        if not case.assigned_to:
            return
        minutes = resolution_minutes(case.created_at, resolution.resolved_at)
        user = await self._users.record_resolution(case.assigned_to, minutes, resolution.resolved_at)
        if user is None:
            logger.warning(
                "Assignee missing, resolution statistics not recorded",
                extra={"case_id": case.case_id, "user_id": case.assigned_to}
            )

    def _notify(self, recipient_user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        if self._dispatcher is not None:
            self._dispatcher.dispatch(recipient_user_id, kind, payload)

    def _log_transition(self, message: str, case: Case, **extra: Any) -> None:
        logger.info(
            message,
            extra={
                "case_id": case.case_id,
                "status": case.status,
                "priority": case.priority,
                "assigned_to": case.assigned_to,
                **extra,
            }
        )


def escalation_patch(target: User, now: datetime) -> Dict[str, Any]:
    """Field changes recording an escalation to ``target``."""
    return {
        "sla.escalated": True,
        "sla.escalated_to": target.id,
        "sla.escalated_at": now,
        "updated_at": now,
    }


class EscalationResolver:
    """
    Finds the escalation target of an overdue case.

    Performs the directory lookups and defers the decision to
    ``select_escalation_target``.
    """

    def __init__(
        self,
        user_directory: IUserDirectory,
        config_provider: Optional[ISLAConfigProvider] = None
    ):
        self._users = user_directory
        self._config_provider = config_provider or StaticConfigProvider()

    async def load_candidates(self) -> List[User]:
        """Active users whose role makes them eligible fallback targets."""
        config = self._config_provider.get_config()
        return await self._users.find(UserQuery(roles=list(config.escalation_roles), is_active=True))

    async def resolve(self, case: Case, candidates: Optional[List[User]] = None) -> Optional[User]:
        """
        Resolve the escalation target for a case.

        Args:
            case: The overdue case
            candidates: Pre-loaded fallback candidates (loaded when omitted)

        Returns:
            Target user, or None if nobody is eligible
        """
        config = self._config_provider.get_config()

        assignee = None
        supervisor = None
        if case.assigned_to:
            try:
                assignee = await self._users.get(case.assigned_to)
                if assignee is not None and assignee.supervisor:
                    supervisor = await self._users.get(assignee.supervisor)
            except RepositoryException as e:
                logger.warning(
                    "Supervisor lookup failed, falling back to candidates",
                    extra={"case_id": case.case_id, "error": e.message}
                )
                supervisor = None

        if candidates is None:
            candidates = await self.load_candidates()

        return select_escalation_target(
            case, assignee, supervisor, candidates, config.escalation_roles
        )
