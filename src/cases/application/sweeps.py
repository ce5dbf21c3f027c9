"""
Sweep Jobs
==========

Background passes over the case store and user directory:

- SLABreachSweep: mark active cases past their due date as overdue
- EscalationSweep: escalate cases overdue by more than the grace period
- WorkloadReconciliationSweep: recompute analyst workload counters
- DigestSweep: send daily digests to opted-in users
- LivenessSweep: record store health counts

A sweep run never raises. Selection failures end the run with
``SweepReport.error`` set; a failing record is logged and counted, and
the pass moves on. A run that outlives its budget stops with
``SweepReport.timed_out`` set. Flag flips use guarded writes so repeated or
overlapping runs apply each change once.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Coroutine, Dict, List, Optional, Sequence
from uuid import uuid4

from config import (
    CaseStatus, TimelineAction, NotificationKind,
    ACTIVE_STATUSES, WORKLOAD_ROLES
)
from cases.domain import (
    Case, TimelineEvent, User, CaseQuery, UserQuery,
    DigestStats, HealthSnapshot, SLAPolicy
)
from cases.application.notifications import NotificationDispatcher, case_payload
from cases.application.services import (
    ICaseRepository, IUserDirectory, IClock, SystemClock,
    EscalationResolver, UserCounter, escalation_patch
)
from shared.infrastructure.grafana import GrafanaOTLPExporter
from shared.infrastructure.logging import get_context_logger, log_latency

ESCALATION_REASON = "SLA_BREACH"


@dataclass
class SweepReport:
    """Outcome of one sweep run."""
    sweep: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: int = 0
    selected: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    timed_out: bool = False
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed == 0 and not self.timed_out

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class Sweep(ABC):
    """
    Base class for sweep jobs.

    Subclasses select their records and process them one at a time.
    ``process`` returns True when it changed something.
    """

    name: str = "sweep"

    # True when a changed record drops out of the selection, so the next
    # page starts that many records earlier.
    consumes_selection: bool = False

    # Post-processing still gets this long once the run budget is spent.
    after_pass_grace_seconds: float = 1.0

    def __init__(
        self,
        clock: Optional[IClock] = None,
        timeout_seconds: float = 120.0,
        page_size: Optional[int] = None,
        exporter: Optional[GrafanaOTLPExporter] = None,
        timer: Callable[[], float] = time.monotonic
    ):
        self._clock = clock or SystemClock()
        self._timeout = timeout_seconds
        self._page_size = page_size
        self._exporter = exporter
        self._timer = timer
        self.last_report: Optional[SweepReport] = None

    @abstractmethod
    async def select(self, now: datetime, offset: int = 0) -> Sequence[Any]:
        """Load one page of the records this pass works on."""

    @abstractmethod
    async def process(self, record: Any, now: datetime, log) -> bool:
        """Handle one record."""

    def before_pass(self) -> None:
        """Hook run before the first page is selected."""

    async def after_pass(self, report: SweepReport, now: datetime, log) -> None:
        """Hook run once the records are handled."""

    def record_id(self, record: Any) -> Optional[str]:
        return getattr(record, "case_id", None) or getattr(record, "id", None)

    @property
    def paginated(self) -> bool:
        return self._page_size is not None

    async def _bounded(self, coro: Coroutine[Any, Any, Any], budget: float) -> Any:
        """Await ``coro`` for at most ``budget`` seconds."""
        if budget <= 0:
            coro.close()
            raise asyncio.TimeoutError
        return await asyncio.wait_for(coro, budget)

    async def run(self) -> SweepReport:
        """
        Run one pass. Never raises.

        Pages through the selection until a short page comes back. Every
        store call is bounded by what is left of the run budget; once it
        is spent the pass stops and the rest waits for the next run.
        """
        now = self._clock.now()
        report = SweepReport(sweep=self.name, started_at=now)
        log = get_context_logger(__name__, correlation_id=f"{self.name}-{uuid4().hex[:12]}")
        start = self._timer()
        deadline = start + self._timeout

        with log_latency(log, f"{self.name} sweep", sweep=self.name):
            self.before_pass()
            try:
                await self._run_pages(report, now, deadline, log)
            except asyncio.TimeoutError:
                report.timed_out = True
                log.warning(
                    "Sweep timed out, remaining records left for the next run",
                    extra={"sweep": self.name, "selected": report.selected, "timeout_seconds": self._timeout}
                )

            budget = max(deadline - self._timer(), self.after_pass_grace_seconds)
            try:
                await self._bounded(self.after_pass(report, now, log), budget)
            except asyncio.TimeoutError:
                report.timed_out = True
                log.warning("Sweep post-processing timed out", extra={"sweep": self.name})
            except Exception as e:
                log.error("Sweep post-processing failed", extra={"sweep": self.name, "error": str(e)})
                if report.error is None:
                    report.error = str(e) or type(e).__name__

        report.finished_at = self._clock.now()
        report.duration_ms = int((self._timer() - start) * 1000)
        self.last_report = report
        log.info("Sweep finished", extra=report.to_dict())

        await self._export(report, log)
        return report

    async def _run_pages(self, report: SweepReport, now: datetime, deadline: float, log) -> None:
        offset = 0
        while True:
            try:
                records = list(await self._bounded(self.select(now, offset), deadline - self._timer()))
            except asyncio.TimeoutError:
                raise
            except Exception as e:
                report.error = str(e) or type(e).__name__
                log.error(
                    "Sweep selection failed",
                    extra={"sweep": self.name, "error": report.error, "error_type": type(e).__name__}
                )
                return

            report.selected += len(records)
            changed_in_page = 0
            for record in records:
                try:
                    changed = await self._bounded(self.process(record, now, log), deadline - self._timer())
                except asyncio.TimeoutError:
                    raise
                except Exception as e:
                    report.failed += 1
                    log.error(
                        "Sweep record failed",
                        extra={
                            "sweep": self.name,
                            "record_id": self.record_id(record),
                            "error": str(e),
                            "error_type": type(e).__name__,
                        }
                    )
                    continue
                if changed:
                    report.processed += 1
                    changed_in_page += 1
                else:
                    report.skipped += 1

            if not self.paginated or len(records) < self._page_size:
                return
            offset += len(records) - changed_in_page if self.consumes_selection else len(records)

    async def _export(self, report: SweepReport, log) -> None:
        if self._exporter is None or not self._exporter.is_enabled():
            return
        try:
            await self._exporter.export_sweep_report(
                report.sweep, report.processed, report.failed, report.duration_ms
            )
        except Exception as e:
            log.warning("Sweep metrics export failed", extra={"sweep": self.name, "error": str(e)})


class SLABreachSweep(Sweep):
    """Marks active cases whose due date has passed as overdue."""

    name = "sla_breach"
    consumes_selection = True

    def __init__(
        self,
        case_repository: ICaseRepository,
        warning_minutes: int = 60,
        **kwargs: Any
    ):
        super().__init__(**kwargs)
        self._cases = case_repository
        self._warning = timedelta(minutes=warning_minutes)

    async def select(self, now: datetime, offset: int = 0) -> List[Case]:
        return await self._cases.find(CaseQuery(
            statuses=list(ACTIVE_STATUSES),
            due_before=now,
            is_overdue=False,
            limit=self._page_size,
            offset=offset,
        ))

    async def process(self, case: Case, now: datetime, log) -> bool:
        event = TimelineEvent(
            action=TimelineAction.SLA_BREACH,
            description="Case exceeded SLA time limit",
            timestamp=case.next_event_timestamp(now),
            metadata={
                "automatic_update": True,
                "due_date": case.sla.due_date.isoformat() if case.sla.due_date else None,
            },
        )
        updated = await self._cases.update(
            case.id,
            {"sla.is_overdue": True, "updated_at": now},
            [event],
            guard={"sla.is_overdue": False},
        )
        if updated is None:
            return False

        log.warning(
            "Case marked overdue",
            extra={
                "case_id": case.case_id,
                "priority": case.priority,
                "assigned_to": case.assigned_to,
                "due_date": event.metadata["due_date"],
            }
        )
        return True

    async def after_pass(self, report: SweepReport, now: datetime, log) -> None:
        approaching = await self._cases.find(CaseQuery(
            statuses=list(ACTIVE_STATUSES),
            due_after=now,
            due_before=now + self._warning,
            escalated=False,
            limit=self._page_size,
        ))
        for case in approaching:
            log.info(
                "Case approaching SLA breach",
                extra={
                    "case_id": case.case_id,
                    "assigned_to": case.assigned_to,
                    "minutes_remaining": round((case.sla.due_date - now).total_seconds() / 60),
                }
            )
        report.details["approaching_breach"] = len(approaching)
        report.details["newly_overdue"] = report.processed


class EscalationSweep(Sweep):
    """
    Escalates cases that stayed overdue past the grace period.

    The fallback candidate list is loaded once per pass. Cases without an
    eligible target stay unescalated, are paged past, and are retried on
    the next pass.
    """

    name = "escalation"
    consumes_selection = True

    def __init__(
        self,
        case_repository: ICaseRepository,
        resolver: EscalationResolver,
        grace_minutes: int = 60,
        dispatcher: Optional[NotificationDispatcher] = None,
        **kwargs: Any
    ):
        super().__init__(**kwargs)
        self._cases = case_repository
        self._resolver = resolver
        self._grace_minutes = grace_minutes
        self._dispatcher = dispatcher
        self._candidates: Optional[List[User]] = None

    async def select(self, now: datetime, offset: int = 0) -> List[Case]:
        cases = await self._cases.find(CaseQuery(
            statuses=list(ACTIVE_STATUSES),
            due_before=SLAPolicy.escalation_cutoff(now, self._grace_minutes),
            escalated=False,
            limit=self._page_size,
            offset=offset,
        ))
        if cases and self._candidates is None:
            self._candidates = await self._resolver.load_candidates()
        return cases

    def before_pass(self) -> None:
        self._candidates = None

    async def process(self, case: Case, now: datetime, log) -> bool:
        target = await self._resolver.resolve(case, self._candidates or [])
        if target is None:
            log.warning(
                "No escalation target found",
                extra={"case_id": case.case_id, "assigned_to": case.assigned_to}
            )
            return False

        event = TimelineEvent(
            action=TimelineAction.ESCALATED,
            description=f"Case automatically escalated to {target.full_name} due to SLA breach",
            timestamp=case.next_event_timestamp(now),
            metadata={
                "automatic_escalation": True,
                "escalated_to": target.id,
                "reason": ESCALATION_REASON,
            },
        )
        updated = await self._cases.update(
            case.id,
            escalation_patch(target, now),
            [event],
            guard={"sla.escalated": False},
        )
        if updated is None:
            return False

        overdue_minutes = 0
        if case.sla.due_date is not None:
            overdue_minutes = max(0, int((now - case.sla.due_date).total_seconds() // 60))
        if self._dispatcher is not None:
            self._dispatcher.dispatch(target.id, NotificationKind.ESCALATION, {
                "case": case_payload(updated),
                "escalated_to_name": target.full_name,
                "reason": ESCALATION_REASON,
                "overdue_minutes": overdue_minutes,
            })

        log.info(
            "Case escalated",
            extra={
                "case_id": case.case_id,
                "escalated_to": target.id,
                "overdue_minutes": overdue_minutes,
            }
        )
        return True


class WorkloadReconciliationSweep(Sweep):
    """
    Recomputes workload counters of analysts from live case data.

    Overwrites ``current_case_load`` with the number of active cases
    assigned to the user and ``overdue_cases`` with the active ones past
    their due date.
    """

    name = "workload_reconciliation"

    def __init__(
        self,
        case_repository: ICaseRepository,
        user_directory: IUserDirectory,
        **kwargs: Any
    ):
        super().__init__(**kwargs)
        self._cases = case_repository
        self._users = user_directory

    async def select(self, now: datetime, offset: int = 0) -> List[User]:
        return await self._users.find(UserQuery(
            roles=list(WORKLOAD_ROLES),
            is_active=True,
            limit=self._page_size,
            offset=offset,
        ))

    async def process(self, user: User, now: datetime, log) -> bool:
        load = await self._cases.count(CaseQuery(
            assigned_to=user.id, statuses=list(ACTIVE_STATUSES)
        ))
        overdue = await self._cases.count(CaseQuery(
            assigned_to=user.id, statuses=list(ACTIVE_STATUSES), due_before=now
        ))
        await self._users.overwrite(user.id, {
            UserCounter.CURRENT_CASE_LOAD: load,
            UserCounter.OVERDUE_CASES: overdue,
        })

        drifted = (
            user.performance.current_case_load != load
            or user.performance.overdue_cases != overdue
        )
        if drifted:
            log.info(
                "Workload counters corrected",
                extra={
                    "user_id": user.id,
                    "previous_load": user.performance.current_case_load,
                    "current_load": load,
                    "previous_overdue": user.performance.overdue_cases,
                    "overdue": overdue,
                }
            )
        return drifted

    async def after_pass(self, report: SweepReport, now: datetime, log) -> None:
        report.details["users"] = report.selected
        report.details["drift_corrected"] = report.processed


class DigestSweep(Sweep):
    """Sends one daily digest per opted-in user with open work."""

    name = "daily_digest"

    def __init__(
        self,
        case_repository: ICaseRepository,
        user_directory: IUserDirectory,
        dispatcher: Optional[NotificationDispatcher] = None,
        **kwargs: Any
    ):
        super().__init__(**kwargs)
        self._cases = case_repository
        self._users = user_directory
        self._dispatcher = dispatcher

    async def select(self, now: datetime, offset: int = 0) -> List[User]:
        return await self._users.find(UserQuery(
            is_active=True,
            daily_digest=True,
            limit=self._page_size,
            offset=offset,
        ))

    async def digest_for(self, user: User, now: datetime) -> DigestStats:
        """Counts shown in a user's digest."""
        return DigestStats(
            open_cases=await self._cases.count(CaseQuery(
                assigned_to=user.id, statuses=[CaseStatus.OPEN]
            )),
            in_progress_cases=await self._cases.count(CaseQuery(
                assigned_to=user.id, statuses=[CaseStatus.IN_PROGRESS]
            )),
            overdue_cases=await self._cases.count(CaseQuery(
                assigned_to=user.id, statuses=list(ACTIVE_STATUSES), due_before=now
            )),
        )

    async def process(self, user: User, now: datetime, log) -> bool:
        stats = await self.digest_for(user, now)
        if not stats.has_activity or self._dispatcher is None:
            return False

        self._dispatcher.dispatch(user.id, NotificationKind.DAILY_DIGEST, {
            "recipient_name": user.full_name,
            "date": now.date().isoformat(),
            "stats": stats.to_dict(),
        })
        return True

    async def after_pass(self, report: SweepReport, now: datetime, log) -> None:
        report.details["digests_sent"] = report.processed


class LivenessSweep(Sweep):
    """
    Records store health counts.

    Never mutates anything. A failing store yields a snapshot with
    ``database=False``.
    """

    name = "liveness"

    def __init__(
        self,
        case_repository: ICaseRepository,
        user_directory: IUserDirectory,
        **kwargs: Any
    ):
        super().__init__(**kwargs)
        self._cases = case_repository
        self._users = user_directory
        self.last_snapshot: Optional[HealthSnapshot] = None

    @property
    def paginated(self) -> bool:
        return False

    async def select(self, now: datetime, offset: int = 0) -> List[HealthSnapshot]:
        try:
            snapshot = HealthSnapshot(
                timestamp=now,
                database=True,
                total_cases=await self._cases.count(CaseQuery()),
                active_cases=await self._cases.count(CaseQuery(statuses=list(ACTIVE_STATUSES))),
                overdue_cases=await self._cases.count(CaseQuery(
                    statuses=list(ACTIVE_STATUSES), due_before=now
                )),
                active_users=await self._users.count(UserQuery(is_active=True)),
            )
        except (Exception, asyncio.CancelledError):
            self.last_snapshot = HealthSnapshot(timestamp=now, database=False)
            raise
        return [snapshot]

    async def process(self, snapshot: HealthSnapshot, now: datetime, log) -> bool:
        self.last_snapshot = snapshot
        if snapshot.overdue_cases > 0:
            log.warning(
                "Overdue cases present",
                extra={"overdue_cases": snapshot.overdue_cases}
            )
        if self._exporter is not None and self._exporter.is_enabled():
            await self._exporter.export_health_snapshot(snapshot.to_dict())
        return False

    def record_id(self, record: Any) -> Optional[str]:
        return None

    async def after_pass(self, report: SweepReport, now: datetime, log) -> None:
        if self.last_snapshot is not None:
            report.details["snapshot"] = self.last_snapshot.to_dict()
