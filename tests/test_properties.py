"""
Property tests for the case engine.

Each property drives the in-memory stores with generated operation
sequences and checks an invariant that must hold afterwards.
"""

import asyncio

from hypothesis import given
from hypothesis import strategies as st

from config import (
    Priority, UserRole, TimelineAction,
    VALID_STATUSES, ACTIVE_STATUSES, CLOSED_OUT_STATUSES
)
from cases.application import (
    CaseLifecycleService, EscalationResolver,
    SLABreachSweep, EscalationSweep, WorkloadReconciliationSweep
)
from cases.domain import CaseQuery, Case, select_escalation_target
from cases.infrastructure import InMemoryCaseRepository, InMemoryUserDirectory

from conftest import FrozenClock, make_user

ANALYSTS = ["alice", "bob", "carol"]

priority_strategy = st.sampled_from([Priority.P1, Priority.P2, Priority.P3])

operation_strategy = st.one_of(
    st.tuples(st.just("create"), priority_strategy, st.sampled_from(ANALYSTS + [None])),
    st.tuples(st.just("assign"), st.integers(min_value=0, max_value=9), st.sampled_from(ANALYSTS)),
    st.tuples(st.just("status"), st.integers(min_value=0, max_value=9), st.sampled_from(VALID_STATUSES)),
    st.tuples(st.just("priority"), st.integers(min_value=0, max_value=9), priority_strategy),
    st.tuples(st.just("comment"), st.integers(min_value=0, max_value=9), st.just("note")),
    st.tuples(st.just("tick"), st.integers(min_value=1, max_value=180), st.none()),
)


async def _build():
    clock = FrozenClock()
    cases = InMemoryCaseRepository()
    users = InMemoryUserDirectory()
    for user_id in ANALYSTS:
        await users.insert(make_user(user_id, supervisor="lead"))
    await users.insert(make_user("lead", role=UserRole.SENIOR_ANALYST))
    service = CaseLifecycleService(cases, users, clock=clock)
    return clock, cases, users, service


async def _apply(operations, clock, cases, users, service, observe=None):
    created = []
    sweeps = [
        SLABreachSweep(cases, clock=clock),
        EscalationSweep(cases, EscalationResolver(users), clock=clock),
    ]
    for kind, arg, value in operations:
        if kind == "create":
            data = {"title": "generated", "description": "generated", "priority": arg}
            if value:
                data["assigned_to"] = value
            created.append((await service.create(data)).id)
        elif kind == "tick":
            clock.advance(minutes=arg)
            for sweep in sweeps:
                await sweep.run()
        elif created:
            case_id = created[arg % len(created)]
            if kind == "assign":
                await service.assign(case_id, value)
            elif kind == "status":
                await service.change_status(case_id, value)
            elif kind == "priority":
                await service.change_priority(case_id, value)
            elif kind == "comment":
                await service.add_comment(case_id, value, None)
        if observe is not None:
            await observe(created)
    return created


@given(st.lists(operation_strategy, max_size=30))
def test_timeline_only_grows_by_appending(operations):
    async def scenario():
        clock, cases, users, service = await _build()
        history = {}

        async def observe(created):
            for case_id in created:
                case = await cases.get(case_id)
                previous = history.get(case_id, [])
                assert case.timeline[:len(previous)] == previous
                history[case_id] = list(case.timeline)

        await _apply(operations, clock, cases, users, service, observe)

    asyncio.run(scenario())


@given(st.lists(operation_strategy, max_size=30))
def test_escalation_and_overdue_flags_are_monotonic(operations):
    async def scenario():
        clock, cases, users, service = await _build()
        seen_escalated = set()
        seen_overdue = set()

        async def observe(created):
            for case_id in created:
                case = await cases.get(case_id)
                if case_id in seen_escalated:
                    assert case.sla.escalated is True
                if case.sla.escalated:
                    seen_escalated.add(case_id)
                if case_id in seen_overdue and case.is_active:
                    assert case.sla.is_overdue is True
                if case.sla.is_overdue:
                    seen_overdue.add(case_id)

        await _apply(operations, clock, cases, users, service, observe)

    asyncio.run(scenario())


@given(st.lists(operation_strategy, max_size=30))
def test_reconciliation_converges_to_live_counts(operations):
    async def scenario():
        clock, cases, users, service = await _build()
        await _apply(operations, clock, cases, users, service)
        sweep = WorkloadReconciliationSweep(cases, users, clock=clock)

        await sweep.run()

        now = clock.now()
        for user_id in ANALYSTS:
            user = await users.get(user_id)
            active = await cases.count(CaseQuery(assigned_to=user_id, statuses=list(ACTIVE_STATUSES)))
            overdue = await cases.count(CaseQuery(
                assigned_to=user_id, statuses=list(ACTIVE_STATUSES), due_before=now
            ))
            assert user.performance.current_case_load == active
            assert user.performance.overdue_cases == overdue
        assert (await sweep.run()).processed == 0

    asyncio.run(scenario())


@given(st.lists(operation_strategy, max_size=30))
def test_resolution_stamped_at_most_once(operations):
    async def scenario():
        clock, cases, users, service = await _build()
        stamps = {}

        async def observe(created):
            for case_id in created:
                case = await cases.get(case_id)
                if case_id in stamps:
                    assert case.resolution == stamps[case_id]
                elif case.resolution is not None:
                    stamps[case_id] = case.resolution

        await _apply(operations, clock, cases, users, service, observe)

        total_resolved = 0
        for user_id in ANALYSTS:
            total_resolved += (await users.get(user_id)).performance.total_cases_resolved
        assigned_stamps = 0
        for case_id in stamps:
            case = await cases.get(case_id)
            assigned_stamps += 1 if case.timeline and _assignee_at_resolution(case) else 0
        assert total_resolved == assigned_stamps

    asyncio.run(scenario())


def _assignee_at_resolution(case: Case):
    """Assignee in effect when the resolution was stamped."""
    assignee = None
    for event in case.timeline:
        if event.timestamp > case.resolution.resolved_at:
            break
        if event.action == TimelineAction.ASSIGNED:
            assignee = event.metadata.get("assigned_to")
        if (
            event.action == TimelineAction.STATUS_CHANGED
            and event.metadata.get("new_status") in CLOSED_OUT_STATUSES
            and event.timestamp == case.resolution.resolved_at
        ):
            return assignee
    return assignee


user_strategy = st.builds(
    lambda user_id, role, active, load: make_user(user_id, role=role, is_active=active, load=load),
    user_id=st.sampled_from(["u1", "u2", "u3", "u4", "u5"]),
    role=st.sampled_from([UserRole.ADMIN, UserRole.SENIOR_ANALYST, UserRole.ANALYST, UserRole.VIEWER]),
    active=st.booleans(),
    load=st.integers(min_value=0, max_value=20),
)


@given(
    candidates=st.lists(user_strategy, max_size=8),
    assigned_to=st.sampled_from(["u1", "u2", None]),
)
def test_fallback_target_is_least_loaded_eligible(candidates, assigned_to):
    case = Case(id="c", case_id="CASE-2024-01-15-001-001", title="t", description="d", assigned_to=assigned_to)

    target = select_escalation_target(case, None, None, candidates)

    eligible = [
        user for user in candidates
        if user.is_active
        and user.role in (UserRole.SENIOR_ANALYST, UserRole.ADMIN)
        and user.id != assigned_to
    ]
    if not eligible:
        assert target is None
    else:
        assert target in eligible
        assert target.performance.current_case_load == min(u.performance.current_case_load for u in eligible)
        assert target.id != assigned_to
