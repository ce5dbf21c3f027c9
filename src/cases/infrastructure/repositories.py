"""
Case Infrastructure Repositories
================================

Concrete implementations of the case store and user directory using
SQLAlchemy.

Each operation runs in its own short transaction. Guarded writes are
single ``UPDATE ... WHERE`` statements whose row count tells whether the
guard matched, and counter changes are computed by the database
(``SET col = col + :delta``) so concurrent writers never lose updates.
"""

import functools
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import case as sql_case, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cases.application import (
    ICaseRepository, IUserDirectory, UserCounter, CASE_PATCH_FIELDS
)
from cases.domain import (
    Case, CaseSLA, Resolution, TimelineEvent, User, Performance,
    MonthlyStat, NotificationPreferences, CaseQuery, UserQuery
)
from cases.infrastructure.models import (
    CaseModel, TimelineEventModel, UserModel, MonthlyStatModel
)
from core import (
    NotFoundError, RepositoryException, TransientStoreError, CaseIdConflict
)


def _store_operation(operation: str):
    """Translate SQLAlchemy errors raised by a repository call."""
    def decorator(method):
        @functools.wraps(method)
        async def wrapper(*args, **kwargs):
            try:
                return await method(*args, **kwargs)
            except SQLAlchemyError as e:
                raise TransientStoreError(operation, str(e)) from e
        return wrapper
    return decorator


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utc(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc)
    return value


def _parse_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None


# Patch keys mapped to flat columns
_CASE_COLUMNS = {
    "status": CaseModel.status,
    "priority": CaseModel.priority,
    "updated_at": CaseModel.updated_at,
    "assigned_to": CaseModel.assigned_to,
    "assigned_by": CaseModel.assigned_by,
    "assigned_at": CaseModel.assigned_at,
    "sla.due_date": CaseModel.sla_due_date,
    "sla.is_overdue": CaseModel.sla_is_overdue,
    "sla.escalated": CaseModel.sla_escalated,
    "sla.escalated_to": CaseModel.sla_escalated_to,
    "sla.escalated_at": CaseModel.sla_escalated_at,
}

_USER_COUNTER_COLUMNS = {
    UserCounter.CURRENT_CASE_LOAD: UserModel.current_case_load,
    UserCounter.TOTAL_CASES_ASSIGNED: UserModel.total_cases_assigned,
    UserCounter.TOTAL_CASES_RESOLVED: UserModel.total_cases_resolved,
    UserCounter.OVERDUE_CASES: UserModel.overdue_cases,
}


class SQLAlchemyCaseRepository(ICaseRepository):
    """
    SQLAlchemy implementation of the case store.

    Handles persistence of Case entities using async SQLAlchemy.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @_store_operation("get case")
    async def get(self, case_id: str) -> Optional[Case]:
        """Get case by store id."""
        pk = _parse_uuid(case_id)
        if pk is None:
            return None

        async with self._session_maker() as session:
            model = await self._load(session, pk)
            return self._to_entity(model) if model else None

    @_store_operation("get case by case id")
    async def get_by_case_id(self, case_id: str) -> Optional[Case]:
        """Get case by its human-readable identifier."""
        async with self._session_maker() as session:
            stmt = select(CaseModel).where(CaseModel.case_id == case_id)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return self._to_entity(model) if model else None

    @_store_operation("find cases")
    async def find(self, query: CaseQuery) -> List[Case]:
        """List cases matching the query, earliest due date first."""
        stmt = (
            select(CaseModel)
            .where(*self._conditions(query))
            .order_by(CaseModel.sla_due_date.asc(), CaseModel.case_id.asc())
            .offset(query.offset)
        )
        if query.limit is not None:
            stmt = stmt.limit(query.limit)

        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return [self._to_entity(model) for model in result.scalars().all()]

    @_store_operation("count cases")
    async def count(self, query: CaseQuery) -> int:
        """Count cases matching the query."""
        stmt = select(func.count()).select_from(CaseModel).where(*self._conditions(query))
        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    @_store_operation("insert case")
    async def insert(self, case: Case) -> Case:
        """Persist a new case."""
        model = CaseModel(
            id=uuid4(),
            case_id=case.case_id,
            title=case.title,
            description=case.description,
            priority=case.priority,
            status=case.status,
            severity=case.severity,
            category=case.category,
            tags=list(case.tags),
            created_at=_utc(case.created_at),
            updated_at=_utc(case.updated_at),
            assigned_to=case.assigned_to,
            assigned_by=case.assigned_by,
            assigned_at=_utc(case.assigned_at),
            sla_due_date=_utc(case.sla.due_date),
            sla_is_overdue=case.sla.is_overdue,
            sla_escalated=case.sla.escalated,
            sla_escalated_to=case.sla.escalated_to,
            sla_escalated_at=_utc(case.sla.escalated_at),
            resolved_at=_utc(case.resolution.resolved_at) if case.resolution else None,
            resolved_by=case.resolution.resolved_by if case.resolution else None,
            resolution_summary=case.resolution.summary if case.resolution else None,
            timeline=[self._event_model(event) for event in case.timeline],
        )

        try:
            async with self._session_maker() as session:
                async with session.begin():
                    session.add(model)
        except IntegrityError as e:
            raise CaseIdConflict(case.case_id) from e

        return self._to_entity(model)

    @_store_operation("update case")
    async def update(
        self,
        case_id: str,
        patch: Dict[str, Any],
        events: Sequence[TimelineEvent] = (),
        guard: Optional[Dict[str, Any]] = None
    ) -> Optional[Case]:
        """Apply a field patch and append events in one transaction."""
        pk = _parse_uuid(case_id)
        if pk is None:
            raise NotFoundError("Case", case_id)

        values = self._patch_values(patch)
        conditions = [CaseModel.id == pk, *self._guard_conditions(guard or {})]

        async with self._session_maker() as session:
            async with session.begin():
                if values:
                    stmt = (
                        update(CaseModel)
                        .where(*conditions)
                        .values(values)
                        .execution_options(synchronize_session=False)
                    )
                    matched = (await session.execute(stmt)).rowcount
                else:
                    stmt = select(func.count()).select_from(CaseModel).where(*conditions)
                    matched = (await session.execute(stmt)).scalar_one()

                if not matched:
                    exists = await session.scalar(select(CaseModel.id).where(CaseModel.id == pk))
                    if exists is None:
                        raise NotFoundError("Case", case_id)
                    return None

                for event in events:
                    event_model = self._event_model(event)
                    event_model.case_pk = pk
                    session.add(event_model)

            model = await self._load(session, pk)
            return self._to_entity(model)

    async def append_event(self, case_id: str, event: TimelineEvent) -> Case:
        """Append one timeline event."""
        return await self.update(case_id, {"updated_at": event.timestamp}, [event])

    @_store_operation("delete case")
    async def delete(self, case_id: str) -> bool:
        """Delete a case and its timeline."""
        pk = _parse_uuid(case_id)
        if pk is None:
            return False

        async with self._session_maker() as session:
            async with session.begin():
                model = await session.get(CaseModel, pk)
                if model is None:
                    return False
                await session.delete(model)
        return True

    # ========== Mapping ==========

    async def _load(self, session: AsyncSession, pk: UUID) -> Optional[CaseModel]:
        stmt = (
            select(CaseModel)
            .where(CaseModel.id == pk)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    def _conditions(self, query: CaseQuery) -> List[Any]:
        conditions = []
        if query.statuses is not None:
            conditions.append(CaseModel.status.in_(query.statuses))
        if query.assigned_to is not None:
            conditions.append(CaseModel.assigned_to == query.assigned_to)
        if query.due_before is not None:
            conditions.append(CaseModel.sla_due_date < _utc(query.due_before))
        if query.due_after is not None:
            conditions.append(CaseModel.sla_due_date >= _utc(query.due_after))
        if query.is_overdue is not None:
            conditions.append(CaseModel.sla_is_overdue == query.is_overdue)
        if query.escalated is not None:
            conditions.append(CaseModel.sla_escalated == query.escalated)
        if query.case_id_prefix is not None:
            conditions.append(CaseModel.case_id.startswith(query.case_id_prefix, autoescape=True))
        return conditions

    def _patch_values(self, patch: Dict[str, Any]) -> Dict[Any, Any]:
        values: Dict[Any, Any] = {}
        for key, value in patch.items():
            if key not in CASE_PATCH_FIELDS:
                raise RepositoryException(f"Unknown case field: {key}")
            if key == "resolution":
                values[CaseModel.resolved_at] = _utc(value.resolved_at) if value else None
                values[CaseModel.resolved_by] = value.resolved_by if value else None
                values[CaseModel.resolution_summary] = value.summary if value else None
            else:
                values[_CASE_COLUMNS[key]] = _utc(value)
        return values

    def _guard_conditions(self, guard: Dict[str, Any]) -> List[Any]:
        conditions = []
        for key, expected in guard.items():
            if key == "resolution":
                if expected is not None:
                    raise RepositoryException("Resolution guard only supports None")
                conditions.append(CaseModel.resolved_at.is_(None))
                continue
            if key not in _CASE_COLUMNS:
                raise RepositoryException(f"Unknown case field: {key}")
            column = _CASE_COLUMNS[key]
            if expected is None:
                conditions.append(column.is_(None))
            else:
                conditions.append(column == _utc(expected))
        return conditions

    def _event_model(self, event: TimelineEvent) -> TimelineEventModel:
        return TimelineEventModel(
            action=event.action,
            description=event.description,
            timestamp=_utc(event.timestamp),
            user_id=event.user_id,
            event_metadata=dict(event.metadata),
        )

    def _to_entity(self, model: CaseModel) -> Case:
        resolution = None
        if model.resolved_at is not None:
            resolution = Resolution(
                resolved_at=_aware(model.resolved_at),
                resolved_by=model.resolved_by,
                summary=model.resolution_summary,
            )

        return Case(
            id=str(model.id),
            case_id=model.case_id,
            title=model.title,
            description=model.description,
            priority=model.priority,
            status=model.status,
            severity=model.severity,
            category=model.category,
            tags=list(model.tags or []),
            created_at=_aware(model.created_at),
            updated_at=_aware(model.updated_at),
            assigned_to=model.assigned_to,
            assigned_by=model.assigned_by,
            assigned_at=_aware(model.assigned_at),
            sla=CaseSLA(
                due_date=_aware(model.sla_due_date),
                is_overdue=model.sla_is_overdue,
                escalated=model.sla_escalated,
                escalated_to=model.sla_escalated_to,
                escalated_at=_aware(model.sla_escalated_at),
            ),
            timeline=[
                TimelineEvent(
                    action=event.action,
                    description=event.description,
                    timestamp=_aware(event.timestamp),
                    user_id=event.user_id,
                    metadata=dict(event.event_metadata or {}),
                )
                for event in model.timeline
            ],
            resolution=resolution,
        )


class SQLAlchemyUserDirectory(IUserDirectory):
    """
    SQLAlchemy implementation of the user directory.

    Handles persistence of User entities and their performance counters.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @_store_operation("get user")
    async def get(self, user_id: str) -> Optional[User]:
        """Get user by id."""
        async with self._session_maker() as session:
            model = await self._load(session, user_id)
            return self._to_entity(model) if model else None

    @_store_operation("find users")
    async def find(self, query: UserQuery) -> List[User]:
        """List users matching the query, ordered by id."""
        stmt = (
            select(UserModel)
            .where(*self._conditions(query))
            .order_by(UserModel.id.asc())
            .offset(query.offset)
        )
        if query.limit is not None:
            stmt = stmt.limit(query.limit)

        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return [self._to_entity(model) for model in result.scalars().all()]

    @_store_operation("count users")
    async def count(self, query: UserQuery) -> int:
        """Count users matching the query."""
        stmt = select(func.count()).select_from(UserModel).where(*self._conditions(query))
        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    @_store_operation("insert user")
    async def insert(self, user: User) -> User:
        """Persist a new user."""
        user_id = user.id or str(uuid4())
        perf = user.performance
        prefs = user.preferences
        model = UserModel(
            id=user_id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            is_active=user.is_active,
            supervisor=user.supervisor,
            created_at=_utc(user.created_at),
            current_case_load=perf.current_case_load,
            total_cases_assigned=perf.total_cases_assigned,
            total_cases_resolved=perf.total_cases_resolved,
            avg_resolution_time=perf.avg_resolution_time,
            overdue_cases=perf.overdue_cases,
            notify_new_assignment=prefs.new_assignment,
            notify_case_update=prefs.case_update,
            notify_escalation=prefs.escalation,
            notify_daily_digest=prefs.daily_digest,
            monthly_stats=[
                MonthlyStatModel(
                    month=stat.month,
                    year=stat.year,
                    cases_resolved=stat.cases_resolved,
                    avg_resolution_time=stat.avg_resolution_time,
                    overdue_cases=stat.overdue_cases,
                )
                for stat in perf.monthly_stats
            ],
        )

        try:
            async with self._session_maker() as session:
                async with session.begin():
                    session.add(model)
        except IntegrityError as e:
            raise RepositoryException(
                f"User '{user_id}' already exists", {"user_id": user_id}
            ) from e

        return self._to_entity(model)

    @_store_operation("increment user counter")
    async def atomic_increment(
        self,
        user_id: str,
        field: str,
        delta: int,
        floor: Optional[int] = None
    ) -> None:
        """Add ``delta`` to a counter in a single UPDATE."""
        column = self._counter_column(field)
        expr = column + delta
        if floor is not None:
            expr = sql_case((column + delta < floor, floor), else_=column + delta)

        stmt = (
            update(UserModel)
            .where(UserModel.id == user_id)
            .values({column: expr})
            .execution_options(synchronize_session=False)
        )
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(stmt)
                if not result.rowcount:
                    raise NotFoundError("User", user_id)

    @_store_operation("overwrite user counters")
    async def overwrite(self, user_id: str, fields: Dict[str, int]) -> None:
        """Set counters to absolute values."""
        values = {self._counter_column(name): value for name, value in fields.items()}
        if not values:
            return

        stmt = (
            update(UserModel)
            .where(UserModel.id == user_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(stmt)
                if not result.rowcount:
                    raise NotFoundError("User", user_id)

    @_store_operation("record resolution")
    async def record_resolution(self, user_id: str, minutes: int, at: datetime) -> Optional[User]:
        """
        Fold a first resolution into the user's statistics.

        The running average, resolved count and case load change in one
        UPDATE; SET expressions read the pre-update row. The monthly bucket
        is upserted in the same transaction.
        """
        minutes = float(minutes)
        stmt = (
            update(UserModel)
            .where(UserModel.id == user_id)
            .values({
                UserModel.avg_resolution_time: (
                    UserModel.avg_resolution_time * UserModel.total_cases_resolved + minutes
                ) / (UserModel.total_cases_resolved + 1),
                UserModel.total_cases_resolved: UserModel.total_cases_resolved + 1,
                UserModel.current_case_load: sql_case(
                    (UserModel.current_case_load > 0, UserModel.current_case_load - 1),
                    else_=0,
                ),
            })
            .execution_options(synchronize_session=False)
        )
        month_update = (
            update(MonthlyStatModel)
            .where(
                MonthlyStatModel.user_id == user_id,
                MonthlyStatModel.month == at.month,
                MonthlyStatModel.year == at.year,
            )
            .values({
                MonthlyStatModel.avg_resolution_time: (
                    MonthlyStatModel.avg_resolution_time * MonthlyStatModel.cases_resolved + minutes
                ) / (MonthlyStatModel.cases_resolved + 1),
                MonthlyStatModel.cases_resolved: MonthlyStatModel.cases_resolved + 1,
            })
            .execution_options(synchronize_session=False)
        )

        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(stmt)
                if not result.rowcount:
                    return None

                result = await session.execute(month_update)
                if not result.rowcount:
                    try:
                        async with session.begin_nested():
                            session.add(MonthlyStatModel(
                                user_id=user_id,
                                month=at.month,
                                year=at.year,
                                cases_resolved=1,
                                avg_resolution_time=minutes,
                                overdue_cases=0,
                            ))
                    except IntegrityError:
                        # Bucket created concurrently
                        await session.execute(month_update)

            model = await self._load(session, user_id)
            return self._to_entity(model) if model else None

    # ========== Mapping ==========

    async def _load(self, session: AsyncSession, user_id: str) -> Optional[UserModel]:
        stmt = (
            select(UserModel)
            .where(UserModel.id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    def _counter_column(self, field: str):
        column = _USER_COUNTER_COLUMNS.get(field)
        if column is None:
            raise RepositoryException(f"Unknown user counter: {field}")
        return column

    def _conditions(self, query: UserQuery) -> List[Any]:
        conditions = []
        if query.ids is not None:
            conditions.append(UserModel.id.in_(query.ids))
        if query.roles is not None:
            conditions.append(UserModel.role.in_(query.roles))
        if query.is_active is not None:
            conditions.append(UserModel.is_active == query.is_active)
        if query.daily_digest is not None:
            conditions.append(UserModel.notify_daily_digest == query.daily_digest)
        return conditions

    def _to_entity(self, model: UserModel) -> User:
        return User(
            id=model.id,
            username=model.username,
            email=model.email,
            first_name=model.first_name,
            last_name=model.last_name,
            role=model.role,
            is_active=model.is_active,
            supervisor=model.supervisor,
            created_at=_aware(model.created_at),
            performance=Performance(
                current_case_load=model.current_case_load,
                total_cases_assigned=model.total_cases_assigned,
                total_cases_resolved=model.total_cases_resolved,
                avg_resolution_time=model.avg_resolution_time,
                overdue_cases=model.overdue_cases,
                monthly_stats=[
                    MonthlyStat(
                        month=stat.month,
                        year=stat.year,
                        cases_resolved=stat.cases_resolved,
                        avg_resolution_time=stat.avg_resolution_time,
                        overdue_cases=stat.overdue_cases,
                    )
                    for stat in model.monthly_stats
                ],
            ),
            preferences=NotificationPreferences(
                new_assignment=model.notify_new_assignment,
                case_update=model.notify_case_update,
                escalation=model.notify_escalation,
                daily_digest=model.notify_daily_digest,
            ),
        )
