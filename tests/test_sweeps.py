"""Tests for the background sweeps."""

import asyncio
from datetime import timedelta
from itertools import chain, repeat

import pytest

from config import CaseStatus, TimelineAction, NotificationKind, UserRole
from core import TransientStoreError
from cases.application import (
    CaseLifecycleService, EscalationResolver, NotificationDispatcher,
    SLABreachSweep, EscalationSweep, WorkloadReconciliationSweep,
    DigestSweep, LivenessSweep
)
from cases.domain import CaseQuery
from cases.infrastructure import InMemoryCaseRepository

from conftest import T0, RecordingNotifier, make_user


def _input(**overrides):
    data = {"title": "Beaconing host", "description": "C2 traffic from 10.0.0.7"}
    data.update(overrides)
    return data


class FlakyCaseRepository(InMemoryCaseRepository):
    """Case store whose writes fail for chosen cases, or whose reads fail entirely."""

    def __init__(self):
        super().__init__()
        self.failing_ids = set()
        self.fail_reads = False

    async def find(self, query):
        if self.fail_reads:
            raise TransientStoreError("find cases", "connection refused")
        return await super().find(query)

    async def count(self, query):
        if self.fail_reads:
            raise TransientStoreError("count cases", "connection refused")
        return await super().count(query)

    async def update(self, case_id, patch, events=(), guard=None):
        if case_id in self.failing_ids:
            raise TransientStoreError("update case", "deadlock detected")
        return await super().update(case_id, patch, events, guard)


class HangingCaseRepository(InMemoryCaseRepository):
    """Case store whose reads never return."""

    async def find(self, query):
        await asyncio.sleep(3600)

    async def count(self, query):
        await asyncio.sleep(3600)


class ResolvingDuringSelection(InMemoryCaseRepository):
    """Resolves a case right after the escalation sweep selected it."""

    def __init__(self):
        super().__init__()
        self.resolve_after_select = None

    async def find(self, query):
        cases = await super().find(query)
        if self.resolve_after_select and query.escalated is False:
            await self.update(self.resolve_after_select, {"status": CaseStatus.RESOLVED})
            self.resolve_after_select = None
        return cases


class TestSLABreachSweep:
    """Tests for overdue marking."""

    async def test_marks_past_due_cases(self, lifecycle, case_repository, clock):
        p1 = await lifecycle.create(_input(priority="P1"))
        p3 = await lifecycle.create(_input(priority="P3"))
        clock.advance(hours=2)
        sweep = SLABreachSweep(case_repository, clock=clock)

        report = await sweep.run()

        assert report.ok
        assert report.selected == 1
        assert report.processed == 1
        assert report.details["newly_overdue"] == 1
        breached = await case_repository.get(p1.id)
        assert breached.sla.is_overdue is True
        assert breached.timeline[-1].action == TimelineAction.SLA_BREACH
        assert breached.timeline[-1].user_id is None
        assert breached.timeline[-1].metadata["automatic_update"] is True
        assert (await case_repository.get(p3.id)).sla.is_overdue is False

    async def test_second_run_changes_nothing(self, lifecycle, case_repository, clock):
        case = await lifecycle.create(_input(priority="P1"))
        clock.advance(hours=2)
        sweep = SLABreachSweep(case_repository, clock=clock)
        await sweep.run()

        report = await sweep.run()

        assert report.selected == 0
        breached = await case_repository.get(case.id)
        assert [e.action for e in breached.timeline].count(TimelineAction.SLA_BREACH) == 1

    async def test_closed_out_cases_ignored(self, lifecycle, case_repository, clock):
        case = await lifecycle.create(_input(priority="P1"))
        await lifecycle.change_status(case.id, CaseStatus.RESOLVED)
        clock.advance(hours=2)

        report = await SLABreachSweep(case_repository, clock=clock).run()

        assert report.selected == 0
        assert (await case_repository.get(case.id)).sla.is_overdue is False

    async def test_reports_cases_approaching_breach(self, lifecycle, case_repository, clock):
        await lifecycle.create(_input(priority="P1"))
        await lifecycle.create(_input(priority="P2"))
        clock.advance(minutes=15)

        report = await SLABreachSweep(case_repository, warning_minutes=60, clock=clock).run()

        assert report.processed == 0
        assert report.details["approaching_breach"] == 1

    async def test_record_failure_does_not_stop_the_pass(self, user_directory, clock):
        repository = FlakyCaseRepository()
        lifecycle = CaseLifecycleService(repository, user_directory, clock=clock)
        first = await lifecycle.create(_input(priority="P1"))
        second = await lifecycle.create(_input(priority="P1"))
        third = await lifecycle.create(_input(priority="P1"))
        repository.failing_ids.add(second.id)
        clock.advance(hours=2)

        report = await SLABreachSweep(repository, clock=clock).run()

        assert report.failed == 1
        assert report.processed == 2
        assert not report.ok
        assert (await repository.get(first.id)).sla.is_overdue is True
        assert (await repository.get(second.id)).sla.is_overdue is False
        assert (await repository.get(third.id)).sla.is_overdue is True

    async def test_selection_failure_is_reported(self, clock):
        repository = FlakyCaseRepository()
        repository.fail_reads = True

        report = await SLABreachSweep(repository, clock=clock).run()

        assert report.error is not None
        assert "connection refused" in report.error
        assert report.selected == 0

    async def test_soft_timeout_leaves_work_for_next_run(self, lifecycle, case_repository, clock):
        for _ in range(3):
            await lifecycle.create(_input(priority="P1"))
        clock.advance(hours=2)

        report = await SLABreachSweep(case_repository, clock=clock, timeout_seconds=0).run()

        assert report.timed_out is True
        assert report.selected == 0
        assert report.processed == 0
        follow_up = await SLABreachSweep(case_repository, clock=clock).run()
        assert follow_up.processed == 3

    async def test_timeout_mid_pass(self, lifecycle, case_repository, clock):
        for _ in range(3):
            await lifecycle.create(_input(priority="P1"))
        clock.advance(hours=2)
        ticks = chain([0.0, 0.0, 0.0, 0.5], repeat(2.0))
        sweep = SLABreachSweep(case_repository, clock=clock, timeout_seconds=1.0, timer=lambda: next(ticks))

        report = await sweep.run()

        assert report.timed_out is True
        assert report.processed == 2


class TestEscalationSweep:
    """Tests for automatic escalation."""

    async def test_escalates_to_supervisor_after_grace(
        self, lifecycle, case_repository, resolver, team, clock, dispatcher, notifier
    ):
        case = await lifecycle.create(_input(priority="P1", assigned_to="alice"))
        sweep = EscalationSweep(case_repository, resolver, grace_minutes=60, dispatcher=dispatcher, clock=clock)

        clock.advance(minutes=90)
        early = await sweep.run()
        clock.advance(minutes=31)
        report = await sweep.run()
        await dispatcher.drain()

        assert early.selected == 0
        assert report.processed == 1
        escalated = await case_repository.get(case.id)
        assert escalated.sla.escalated is True
        assert escalated.sla.escalated_to == "sam"
        assert escalated.sla.escalated_at == T0 + timedelta(minutes=121)
        event = escalated.timeline[-1]
        assert event.action == TimelineAction.ESCALATED
        assert event.metadata == {"automatic_escalation": True, "escalated_to": "sam", "reason": "SLA_BREACH"}
        [(recipient, kind, payload)] = [sent for sent in notifier.sent if sent[1] == NotificationKind.ESCALATION]
        assert recipient == "sam"
        assert payload["overdue_minutes"] == 61
        assert payload["case"]["case_id"] == case.case_id

    async def test_escalation_happens_once(self, lifecycle, case_repository, resolver, team, clock):
        case = await lifecycle.create(_input(priority="P1", assigned_to="bob"))
        clock.advance(hours=3)
        sweep = EscalationSweep(case_repository, resolver, clock=clock)
        await sweep.run()
        clock.advance(hours=1)

        report = await sweep.run()

        assert report.selected == 0
        escalated = await case_repository.get(case.id)
        assert escalated.sla.escalated_to == "ada"
        assert escalated.sla.escalated_at == T0 + timedelta(hours=3)

    async def test_no_target_retried_next_pass(self, lifecycle, case_repository, user_directory, clock):
        await user_directory.insert(make_user("bob"))
        case = await lifecycle.create(_input(priority="P1", assigned_to="bob"))
        clock.advance(hours=3)
        sweep = EscalationSweep(case_repository, EscalationResolver(user_directory), clock=clock)

        first = await sweep.run()
        await user_directory.insert(make_user("ada", role=UserRole.ADMIN))
        second = await sweep.run()

        assert first.skipped == 1
        assert first.processed == 0
        assert second.processed == 1
        assert (await case_repository.get(case.id)).sla.escalated_to == "ada"

    async def test_candidates_loaded_once_per_pass(self, lifecycle, case_repository, resolver, team, clock):
        await lifecycle.create(_input(priority="P1"))
        await lifecycle.create(_input(priority="P1"))
        clock.advance(hours=3)
        sweep = EscalationSweep(case_repository, resolver, clock=clock)

        await sweep.run()

        targets = {case.sla.escalated_to for case in await case_repository.find(CaseQuery())}
        assert targets == {"ada"}

    async def test_case_resolved_after_selection_is_tolerated(self, user_directory, team, clock):
        repository = ResolvingDuringSelection()
        service = CaseLifecycleService(repository, user_directory, clock=clock)
        case = await service.create(_input(priority="P1", assigned_to="alice"))
        clock.advance(hours=3)
        repository.resolve_after_select = case.id

        report = await EscalationSweep(repository, EscalationResolver(user_directory), clock=clock).run()

        assert report.ok
        stored = await repository.get(case.id)
        assert stored.status == CaseStatus.RESOLVED
        assert stored.sla.escalated is True

    async def test_failed_delivery_keeps_escalation(self, lifecycle, case_repository, resolver, team, clock):
        failing = NotificationDispatcher(RecordingNotifier(fail=True), timeout_seconds=1.0)
        case = await lifecycle.create(_input(priority="P1", assigned_to="alice"))
        clock.advance(hours=3)

        report = await EscalationSweep(case_repository, resolver, dispatcher=failing, clock=clock).run()
        await failing.drain()

        assert report.processed == 1
        assert failing.failed == 1
        assert (await case_repository.get(case.id)).sla.escalated is True


class TestWorkloadReconciliationSweep:
    """Tests for counter reconciliation."""

    async def test_corrects_drift(self, lifecycle, case_repository, user_directory, team, clock):
        await lifecycle.create(_input(priority="P1", assigned_to="alice"))
        await lifecycle.create(_input(priority="P3", assigned_to="alice"))
        done = await lifecycle.create(_input(assigned_to="alice"))
        await lifecycle.change_status(done.id, CaseStatus.CLOSED)
        await user_directory.overwrite("alice", {"performance.current_case_load": 17})
        clock.advance(hours=2)
        sweep = WorkloadReconciliationSweep(case_repository, user_directory, clock=clock)

        report = await sweep.run()

        alice = await user_directory.get("alice")
        assert alice.performance.current_case_load == 2
        assert alice.performance.overdue_cases == 1
        assert report.details["drift_corrected"] == 1
        again = await sweep.run()
        assert again.processed == 0

    async def test_only_workload_roles(self, case_repository, user_directory, team, clock):
        await user_directory.overwrite("ada", {"performance.current_case_load": 9})

        report = await WorkloadReconciliationSweep(case_repository, user_directory, clock=clock).run()

        assert report.details["users"] == 3
        assert (await user_directory.get("ada")).performance.current_case_load == 9


class TestDigestSweep:
    """Tests for the daily digest."""

    async def test_sends_digest_to_opted_in_users_with_work(
        self, lifecycle, case_repository, user_directory, clock, dispatcher, notifier
    ):
        await user_directory.insert(make_user("dana", daily_digest=True))
        await user_directory.insert(make_user("idle", daily_digest=True))
        await user_directory.insert(make_user("mute"))
        first = await lifecycle.create(_input(priority="P1", assigned_to="dana"))
        await lifecycle.create(_input(assigned_to="dana"))
        await lifecycle.create(_input(assigned_to="mute"))
        await lifecycle.change_status(first.id, CaseStatus.IN_PROGRESS)
        await dispatcher.drain()
        notifier.sent.clear()
        clock.advance(hours=2)
        sweep = DigestSweep(case_repository, user_directory, dispatcher=dispatcher, clock=clock)

        report = await sweep.run()
        await dispatcher.drain()

        assert report.details["digests_sent"] == 1
        [(recipient, kind, payload)] = notifier.sent
        assert recipient == "dana"
        assert kind == NotificationKind.DAILY_DIGEST
        assert payload["stats"] == {"open_cases": 1, "in_progress_cases": 1, "overdue_cases": 1}
        assert payload["date"] == "2024-01-15"


class TestLivenessSweep:
    """Tests for store health snapshots."""

    async def test_snapshot_counts(self, lifecycle, case_repository, user_directory, team, clock):
        await lifecycle.create(_input(priority="P1"))
        await lifecycle.create(_input(priority="P3"))
        closed = await lifecycle.create(_input())
        await lifecycle.change_status(closed.id, CaseStatus.CLOSED)
        clock.advance(hours=2)
        sweep = LivenessSweep(case_repository, user_directory, clock=clock)

        report = await sweep.run()

        snapshot = sweep.last_snapshot
        assert snapshot.database is True
        assert (snapshot.total_cases, snapshot.active_cases, snapshot.overdue_cases) == (3, 2, 1)
        assert snapshot.active_users == 5
        assert report.processed == 0
        assert report.details["snapshot"]["total_cases"] == 3

    async def test_store_failure_marks_database_down(self, user_directory, clock):
        repository = FlakyCaseRepository()
        repository.fail_reads = True
        sweep = LivenessSweep(repository, user_directory, clock=clock)

        report = await sweep.run()

        assert report.error is not None
        assert sweep.last_snapshot.database is False

    async def test_does_not_mutate(self, lifecycle, case_repository, user_directory, clock):
        case = await lifecycle.create(_input(priority="P1"))
        clock.advance(hours=2)

        await LivenessSweep(case_repository, user_directory, clock=clock).run()

        assert await case_repository.get(case.id) == case


class TestPaging:
    """Tests for sweeps whose selection spans several pages."""

    async def test_reconciliation_reaches_every_page(self, case_repository, user_directory, clock):
        for user_id in ("a1", "a2", "a3"):
            await user_directory.insert(make_user(user_id, load=7))

        report = await WorkloadReconciliationSweep(
            case_repository, user_directory, clock=clock, page_size=2
        ).run()

        loads = [(await user_directory.get(user_id)).performance.current_case_load for user_id in ("a1", "a2", "a3")]
        assert loads == [0, 0, 0]
        assert report.selected == 3
        assert report.processed == 3

    async def test_digest_reaches_every_page(
        self, lifecycle, case_repository, user_directory, clock, dispatcher, notifier
    ):
        for user_id in ("d1", "d2", "d3"):
            await user_directory.insert(make_user(user_id, daily_digest=True))
            await lifecycle.create(_input(assigned_to=user_id))
        await dispatcher.drain()
        notifier.sent.clear()

        report = await DigestSweep(
            case_repository, user_directory, dispatcher=dispatcher, clock=clock, page_size=2
        ).run()
        await dispatcher.drain()

        assert report.processed == 3
        assert sorted(recipient for recipient, _, _ in notifier.sent) == ["d1", "d2", "d3"]

    async def test_breach_marks_every_page(self, lifecycle, case_repository, clock):
        for _ in range(5):
            await lifecycle.create(_input(priority="P1"))
        clock.advance(hours=2)

        report = await SLABreachSweep(case_repository, clock=clock, page_size=2).run()

        assert report.processed == 5
        assert await case_repository.count(CaseQuery(is_overdue=False)) == 0

    async def test_escalation_pages_past_cases_without_target(
        self, lifecycle, case_repository, user_directory, clock
    ):
        await user_directory.insert(make_user("root", role=UserRole.ADMIN))
        stuck = await lifecycle.create(_input(priority="P1", assigned_to="root"))
        clock.advance(minutes=10)
        waiting = await lifecycle.create(_input(priority="P1"))
        clock.advance(hours=3)
        sweep = EscalationSweep(case_repository, EscalationResolver(user_directory), clock=clock, page_size=1)

        report = await sweep.run()

        assert (report.processed, report.skipped) == (1, 1)
        assert (await case_repository.get(waiting.id)).sla.escalated_to == "root"
        assert (await case_repository.get(stuck.id)).sla.escalated is False


class TestRunBudget:
    """Tests for runs stuck on a store that never answers."""

    async def test_hung_count_stops_the_run(self, user_directory, team, clock):
        sweep = WorkloadReconciliationSweep(
            HangingCaseRepository(), user_directory, clock=clock, timeout_seconds=0.2
        )

        report = await asyncio.wait_for(sweep.run(), timeout=2)

        assert report.timed_out is True
        assert report.processed == 0
        assert report.selected == 3

    async def test_hung_selection_stops_the_run(self, clock):
        sweep = SLABreachSweep(HangingCaseRepository(), clock=clock, timeout_seconds=0.2)

        report = await asyncio.wait_for(sweep.run(), timeout=3)

        assert report.timed_out is True
        assert report.selected == 0
        assert report.ok is False

    async def test_hung_store_marks_database_down(self, user_directory, clock):
        sweep = LivenessSweep(HangingCaseRepository(), user_directory, clock=clock, timeout_seconds=0.2)

        report = await asyncio.wait_for(sweep.run(), timeout=2)

        assert report.timed_out is True
        assert sweep.last_snapshot.database is False
