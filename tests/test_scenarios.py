"""End-to-end scenarios driving the lifecycle and sweeps with a frozen clock."""

from datetime import timedelta

from config import CaseStatus, Priority, TimelineAction, NotificationKind, UserRole
from cases.application import (
    SLABreachSweep, EscalationSweep, WorkloadReconciliationSweep, LivenessSweep
)

from conftest import T0, make_user


async def test_breach_then_escalate(
    lifecycle, case_repository, user_directory, resolver, team, clock, dispatcher, notifier
):
    """
    A P1 case assigned to an analyst with a supervisor:
    - at +30m nothing happens
    - at +61m it is marked overdue
    - at +2h01m it is escalated to the supervisor
    """
    breach = SLABreachSweep(case_repository, clock=clock)
    escalation = EscalationSweep(case_repository, resolver, dispatcher=dispatcher, clock=clock)
    case = await lifecycle.create(
        {"title": "Ransomware note", "description": "Found on FS01", "priority": "P1", "assigned_to": "alice"},
        actor="ada",
    )
    assert case.sla.due_date == T0 + timedelta(hours=1)

    clock.advance(minutes=30)
    assert (await breach.run()).processed == 0
    assert (await escalation.run()).processed == 0

    clock.advance(minutes=31)
    assert (await breach.run()).processed == 1
    assert (await escalation.run()).processed == 0
    overdue = await case_repository.get(case.id)
    assert overdue.sla.is_overdue is True
    assert overdue.sla.escalated is False

    clock.advance(minutes=60)
    assert (await breach.run()).processed == 0
    assert (await escalation.run()).processed == 1
    await dispatcher.drain()

    final = await case_repository.get(case.id)
    assert final.sla.escalated_to == "sam"
    assert [event.action for event in final.timeline] == [
        TimelineAction.CREATED,
        TimelineAction.ASSIGNED,
        TimelineAction.SLA_BREACH,
        TimelineAction.ESCALATED,
    ]
    timestamps = [event.timestamp for event in final.timeline]
    assert timestamps == sorted(timestamps)
    assert notifier.kinds_for("sam") == [NotificationKind.ESCALATION]


async def test_unassigned_case_escalates_once_an_admin_exists(
    lifecycle, case_repository, user_directory, resolver, clock, dispatcher, notifier
):
    """
    An unassigned P1 case with nobody in the directory:
    - at +61m it is marked overdue
    - at +2h01m there is nobody to escalate to
    - once an admin joins, the next pass escalates to them
    """
    breach = SLABreachSweep(case_repository, clock=clock)
    escalation = EscalationSweep(case_repository, resolver, dispatcher=dispatcher, clock=clock)
    case = await lifecycle.create({"title": "Phishing wave", "description": "Finance mailboxes", "priority": "P1"})

    clock.advance(minutes=61)
    assert (await breach.run()).processed == 1

    clock.advance(minutes=60)
    stalled = await escalation.run()
    assert (stalled.processed, stalled.skipped) == (0, 1)
    assert (await case_repository.get(case.id)).sla.escalated is False

    await user_directory.insert(make_user("root", role=UserRole.ADMIN))
    clock.advance(minutes=5)
    assert (await escalation.run()).processed == 1
    await dispatcher.drain()

    final = await case_repository.get(case.id)
    assert final.sla.escalated is True
    assert final.sla.escalated_to == "root"
    assert final.sla.escalated_at == T0 + timedelta(minutes=126)
    assert [event.action for event in final.timeline] == [
        TimelineAction.CREATED,
        TimelineAction.SLA_BREACH,
        TimelineAction.ESCALATED,
    ]
    assert notifier.kinds_for("root") == [NotificationKind.ESCALATION]


async def test_priority_bump_resets_deadline(lifecycle, case_repository, clock):
    breach = SLABreachSweep(case_repository, clock=clock)
    case = await lifecycle.create({"title": "Phish", "description": "Reported by user"})

    clock.advance(hours=20)
    await lifecycle.change_priority(case.id, Priority.P2)
    clock.advance(hours=3)
    assert (await breach.run()).processed == 0

    clock.advance(hours=2)
    assert (await breach.run()).processed == 1
    assert (await case_repository.get(case.id)).sla.due_date == T0 + timedelta(hours=24)


async def test_reconciliation_restores_counters_after_reopen(
    lifecycle, case_repository, user_directory, team, clock
):
    case = await lifecycle.create({"title": "DLP hit", "description": "USB copy", "assigned_to": "bob"})
    await lifecycle.change_status(case.id, CaseStatus.RESOLVED)
    await lifecycle.change_status(case.id, CaseStatus.IN_PROGRESS)
    assert (await user_directory.get("bob")).performance.current_case_load == 0

    await WorkloadReconciliationSweep(case_repository, user_directory, clock=clock).run()

    assert (await user_directory.get("bob")).performance.current_case_load == 1


async def test_assignment_counter_symmetry(lifecycle, case_repository, user_directory, team, clock):
    first = await lifecycle.create({"title": "a", "description": "a", "assigned_to": "alice"})
    second = await lifecycle.create({"title": "b", "description": "b", "assigned_to": "alice"})
    await lifecycle.assign(first.id, "bob")
    await lifecycle.assign(second.id, "sam")
    await lifecycle.assign(second.id, "alice")
    await lifecycle.change_status(first.id, CaseStatus.CLOSED)

    loads = {
        user_id: (await user_directory.get(user_id)).performance.current_case_load
        for user_id in ("alice", "bob", "sam")
    }
    assert loads == {"alice": 1, "bob": 0, "sam": 0}

    report = await WorkloadReconciliationSweep(case_repository, user_directory, clock=clock).run()
    assert report.processed == 0


async def test_liveness_tracks_progress(lifecycle, case_repository, user_directory, team, clock):
    liveness = LivenessSweep(case_repository, user_directory, clock=clock)
    case = await lifecycle.create({"title": "x", "description": "y", "priority": "P1"})

    await liveness.run()
    assert liveness.last_snapshot.overdue_cases == 0

    clock.advance(hours=2)
    await liveness.run()
    assert liveness.last_snapshot.overdue_cases == 1

    await lifecycle.change_status(case.id, CaseStatus.CLOSED)
    await liveness.run()
    assert liveness.last_snapshot.overdue_cases == 0
    assert liveness.last_snapshot.active_cases == 0
