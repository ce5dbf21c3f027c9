"""
Case Engine Container
=====================

Wires the case store, user directory, SLA configuration, notifier,
sweeps and scheduler into one object the host process owns.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from config import Settings, settings as default_settings
from cases.application import (
    CaseLifecycleService, EscalationResolver, NotificationDispatcher,
    ICaseRepository, IUserDirectory, IClock, SystemClock, INotifier,
    Sweep, SLABreachSweep, EscalationSweep, WorkloadReconciliationSweep,
    DigestSweep, LivenessSweep
)
from cases.infrastructure import (
    InMemoryCaseRepository, InMemoryUserDirectory,
    SQLAlchemyCaseRepository, SQLAlchemyUserDirectory,
    SLAConfigManager, SlackNotifier, CaseScheduler
)
from infrastructure.database import (
    init_database, get_session_maker, create_tables, close_database
)
from shared.infrastructure.grafana import GrafanaOTLPExporter, get_grafana_exporter
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CaseEngine:
    """All long-lived services of the case engine."""

    settings: Settings
    cases: ICaseRepository
    users: IUserDirectory
    config_manager: SLAConfigManager
    clock: IClock
    dispatcher: NotificationDispatcher
    lifecycle: CaseLifecycleService
    resolver: EscalationResolver
    scheduler: CaseScheduler
    exporter: Optional[GrafanaOTLPExporter] = None
    notifier: Optional[INotifier] = None
    sweeps: Dict[str, Sweep] = field(default_factory=dict)

    @classmethod
    def from_settings(
        cls,
        app_settings: Optional[Settings] = None,
        clock: Optional[IClock] = None,
        notifier: Optional[INotifier] = None,
        exporter: Optional[GrafanaOTLPExporter] = None
    ) -> "CaseEngine":
        """
        Build the engine for the configured store backend.

        The SQL backend initializes the database engine here; tables are
        created in ``prepare()``. ``notifier`` defaults to the Slack
        notifier, ``exporter`` to the global Grafana exporter.
        """
        app_settings = app_settings or default_settings
        clock = clock or SystemClock()

        if app_settings.store_backend == "sql":
            init_database(app_settings.database_url)
            session_maker = get_session_maker()
            cases = SQLAlchemyCaseRepository(session_maker)
            users = SQLAlchemyUserDirectory(session_maker)
        else:
            cases = InMemoryCaseRepository()
            users = InMemoryUserDirectory()

        if notifier is None:
            notifier = SlackNotifier(
                webhook_url=app_settings.slack_webhook_url,
                channel=app_settings.slack_channel,
                timeout_seconds=app_settings.slack_timeout_seconds,
                link_base_url=app_settings.case_link_base_url,
            )
        if exporter is None:
            exporter = get_grafana_exporter()

        config_manager = SLAConfigManager()
        dispatcher = NotificationDispatcher(
            notifier, timeout_seconds=app_settings.notification_timeout_seconds
        )
        lifecycle = CaseLifecycleService(
            cases, users,
            clock=clock,
            config_provider=config_manager,
            dispatcher=dispatcher,
        )
        resolver = EscalationResolver(users, config_manager)

        common = {
            "clock": clock,
            "timeout_seconds": app_settings.sweep_timeout_seconds,
            "page_size": app_settings.sweep_page_size,
            "exporter": exporter,
        }
        sweeps: Dict[str, Sweep] = {
            SLABreachSweep.name: SLABreachSweep(
                cases, warning_minutes=app_settings.breach_warning_minutes, **common
            ),
            EscalationSweep.name: EscalationSweep(
                cases, resolver,
                grace_minutes=app_settings.escalation_grace_minutes,
                dispatcher=dispatcher,
                **common
            ),
            WorkloadReconciliationSweep.name: WorkloadReconciliationSweep(cases, users, **common),
            DigestSweep.name: DigestSweep(cases, users, dispatcher=dispatcher, **common),
            LivenessSweep.name: LivenessSweep(cases, users, **common),
        }

        scheduler = CaseScheduler(
            timezone=app_settings.scheduler_timezone,
            misfire_grace_time=app_settings.misfire_grace_seconds,
        )

        return cls(
            settings=app_settings,
            cases=cases,
            users=users,
            config_manager=config_manager,
            clock=clock,
            dispatcher=dispatcher,
            lifecycle=lifecycle,
            resolver=resolver,
            scheduler=scheduler,
            exporter=exporter,
            notifier=notifier,
            sweeps=sweeps,
        )

    @property
    def liveness(self) -> LivenessSweep:
        return self.sweeps[LivenessSweep.name]

    async def prepare(self, watch_config: bool = True) -> None:
        """Create tables (SQL backend) and load the SLA configuration."""
        if self.settings.store_backend == "sql":
            await create_tables()

        self.config_manager.load(self.settings.sla_config_path)
        if watch_config:
            self.config_manager.start_watching()

    def register_jobs(self) -> None:
        """Register every sweep with the scheduler."""
        s = self.settings
        self.scheduler.register(
            SLABreachSweep.name, self.sweeps[SLABreachSweep.name].run, "interval",
            description="Mark overdue cases",
            seconds=s.sla_breach_interval_seconds,
        )
        self.scheduler.register(
            EscalationSweep.name, self.sweeps[EscalationSweep.name].run, "interval",
            description="Escalate cases overdue past the grace period",
            seconds=s.escalation_interval_seconds,
        )
        self.scheduler.register(
            WorkloadReconciliationSweep.name,
            self.sweeps[WorkloadReconciliationSweep.name].run,
            "interval",
            description="Recompute analyst workload counters",
            seconds=s.reconciliation_interval_seconds,
        )
        self.scheduler.register(
            DigestSweep.name, self.sweeps[DigestSweep.name].run, "cron",
            description="Send daily digests",
            hour=s.digest_hour,
            minute=s.digest_minute,
        )
        self.scheduler.register(
            LivenessSweep.name, self.liveness.run, "interval",
            description="Record store health counts",
            seconds=s.liveness_interval_seconds,
        )

    def start(self) -> None:
        """Start the scheduler. Must be called from a running event loop."""
        self.scheduler.start()

    async def stop(self) -> None:
        """Stop scheduling, flush notifications and release resources."""
        self.scheduler.stop()
        self.config_manager.stop_watching()
        await self.dispatcher.drain(timeout=self.settings.notification_timeout_seconds)

        if isinstance(self.notifier, SlackNotifier):
            await self.notifier.close()

        if self.settings.store_backend == "sql":
            await close_database()

        logger.info(
            "Case engine stopped",
            extra={
                "notifications_delivered": self.dispatcher.delivered,
                "notifications_failed": self.dispatcher.failed,
            }
        )
